#!/usr/bin/env python3
"""
ringdvr daemon: run the dvr + live pipelines and the admin HTTP server.

  python -m ringdvr.daemon [--no-web] [--host H] [--port P] [--log-level L]

SIGINT/SIGTERM stop both encoders gracefully, cancel the reconcile timers
and close the web server before exiting.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys

from aiohttp import web

from ringdvr.config import active_config_path, reload_cfg
from ringdvr.coordinator import DualOutputCoordinator
from ringdvr.errors import ConfigError
from ringdvr.web_api import build_app


def _quiet_noisy_dependencies(level: int = logging.WARNING) -> None:
    """Tone down overly chatty third-party loggers."""

    for name in ("aiohttp.access", "aiohttp.server", "asyncio"):
        logging.getLogger(name).setLevel(level)


def configure_logging(level_name: str, dev_mode: bool = False) -> None:
    level = logging.DEBUG if dev_mode else getattr(logging, level_name.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    _quiet_noisy_dependencies()


async def run(cfg: dict, *, web_enabled: bool, host: str, port: int, access_log: bool) -> int:
    log = logging.getLogger("ringdvr.daemon")
    try:
        coordinator = DualOutputCoordinator.from_config(cfg)
    except ConfigError as exc:
        log.error("invalid configuration: %s", exc)
        return 2

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    def _on_signal(signum: int) -> None:
        print(f"[daemon] received signal {signum}, shutting down...", flush=True)
        stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _on_signal, sig)

    runner: web.AppRunner | None = None
    try:
        await coordinator.open()
        if web_enabled:
            runner = web.AppRunner(build_app(coordinator), access_log=log if access_log else None)
            await runner.setup()
            site = web.TCPSite(runner, host, port)
            await site.start()
            log.info("admin server listening on %s:%s", host, port)
        results = await coordinator.start_all()
        for tag, started in results.items():
            if not started:
                log.warning("stream %s did not start; see status for details", tag)
        await stop_event.wait()
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)
        if runner is not None:
            await runner.cleanup()
        await coordinator.close()
        print("[daemon] clean shutdown complete", flush=True)
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Ring-buffer DVR with live HLS window.")
    parser.add_argument("--host", help="Override bind host (defaults to config).")
    parser.add_argument("--port", type=int, help="Override bind port (defaults to config).")
    parser.add_argument("--no-web", action="store_true", help="Do not start the admin HTTP server.")
    parser.add_argument("--access-log", action="store_true", help="Enable aiohttp access logs.")
    parser.add_argument("--log-level", default="INFO", help="Python logging level (default: INFO).")
    args = parser.parse_args(argv)

    cfg = reload_cfg()
    configure_logging(args.log_level, bool(cfg.get("logging", {}).get("dev_mode", False)))
    log = logging.getLogger("ringdvr.daemon")
    log.info("configuration: %s", active_config_path() or "<defaults>")

    web_cfg = cfg.get("web_server", {})
    return asyncio.run(
        run(
            cfg,
            web_enabled=bool(web_cfg.get("enabled", True)) and not args.no_web,
            host=args.host or str(web_cfg.get("listen_host", "0.0.0.0")),
            port=args.port or int(web_cfg.get("listen_port", 3000)),
            access_log=args.access_log or bool(web_cfg.get("access_log", False)),
        )
    )


if __name__ == "__main__":
    try:
        sys.stdout.reconfigure(line_buffering=True)
    except AttributeError:
        pass
    raise SystemExit(main())
