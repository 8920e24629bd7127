#!/usr/bin/env python3
"""
One-shot retention sweep for every configured stream tag.

Runs the same reconciliation the daemon runs on its timer, without starting
any encoder: evicts over-limit and expired segments, drops orphan
thumbnails and rewrites each manifest. Safe to run while the daemon is down
(e.g. after the disk filled up).

  python -m ringdvr.cleanup [--tag dvr] [--log-level INFO]
"""

from __future__ import annotations

import argparse
import logging
import math
import sys

from ringdvr.config import reload_cfg
from ringdvr.coordinator import DualOutputCoordinator
from ringdvr.errors import ConfigError, StoreIOError


def format_bytes(size: int) -> str:
    if size <= 0:
        return "0 B"
    units = ("B", "KB", "MB", "GB", "TB")
    exp = min(int(math.log(size, 1024)), len(units) - 1)
    return f"{size / (1024 ** exp):.2f} {units[exp]}"


def run_cleanup(coordinator: DualOutputCoordinator, tags: list[str] | None = None) -> int:
    """Reconcile ``tags`` (default: all). Returns the number of tags with errors."""
    failed = 0
    for tag in tags or coordinator.tags:
        pipeline = coordinator.pipeline(tag)
        engine = pipeline.engine
        try:
            before = pipeline.store.scan()
        except StoreIOError as exc:
            print(f"[cleanup] {tag}: ERROR {exc}", flush=True)
            failed += 1
            continue
        size_before = sum(stat.size_bytes for stat in before.segments.values())
        print(
            f"[cleanup] {tag}: {len(before.segments)} segment(s), {format_bytes(size_before)}"
            f" in {pipeline.store.root_dir}",
            flush=True,
        )

        report = engine.reconcile()
        size_after = engine.snapshot().total_bytes()
        print(
            f"[cleanup] {tag}: evicted {len(report.evicted)}, kept {report.retained}"
            f"/{engine.policy.max_segments}, freed {format_bytes(max(0, size_before - size_after))}",
            flush=True,
        )
        if report.orphan_thumbnails:
            print(f"[cleanup] {tag}: removed {len(report.orphan_thumbnails)} orphan thumbnail(s)", flush=True)
        for exc in report.errors:
            print(f"[cleanup] {tag}: WARN {exc}", flush=True)
        if report.playlist_error is not None:
            print(f"[cleanup] {tag}: WARN {report.playlist_error}", flush=True)
        if report.aborted or report.errors or report.playlist_error is not None:
            failed += 1
    return failed


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Apply retention to recorded segments once and exit.")
    parser.add_argument("--tag", action="append", help="Limit to this stream tag (repeatable).")
    parser.add_argument("--log-level", default="WARNING", help="Python logging level (default: WARNING).")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    cfg = reload_cfg()
    try:
        coordinator = DualOutputCoordinator.from_config(cfg)
    except ConfigError as exc:
        print(f"[cleanup] invalid configuration: {exc}", flush=True)
        return 2

    unknown = [tag for tag in (args.tag or []) if tag not in coordinator.tags]
    if unknown:
        print(f"[cleanup] unknown tag(s): {', '.join(unknown)}", flush=True)
        return 2

    try:
        failed = run_cleanup(coordinator, args.tag)
    finally:
        coordinator.shutdown_executor()
    print("[cleanup] done" if not failed else f"[cleanup] done with errors on {failed} tag(s)", flush=True)
    return 1 if failed else 0


if __name__ == "__main__":
    sys.exit(main())
