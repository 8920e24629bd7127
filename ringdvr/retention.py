"""Retention engine: rolling, crash-resilient ring of segments for one tag.

The filesystem is the only ground truth. Every reconciliation rescans the
tag's directory, rebuilds the Segment Map from ``stat()`` results, applies
the retention policy, deletes what falls outside it and then hands the
committed snapshot to the playlist maintainer. Nothing here survives a
process restart, and nothing needs to.
"""
from __future__ import annotations

import asyncio
import logging
import math
import threading
import time
from collections.abc import Callable
from concurrent.futures import Executor
from dataclasses import dataclass, field

from ringdvr.errors import ConfigError, DriftDetected, PlaylistWriteFailure, StoreIOError
from ringdvr.segment_map import SegmentInfo, SegmentMap
from ringdvr.segment_store import SegmentStore

EVICT_AGE = "age"
EVICT_COUNT = "count"
EVICT_EMPTY = "empty"


@dataclass(frozen=True)
class RetentionPolicy:
    segment_duration: float
    max_age_seconds: float

    def __post_init__(self) -> None:
        if self.segment_duration <= 0:
            raise ConfigError(f"segment_duration must be > 0 (got {self.segment_duration})")
        if self.max_age_seconds < self.segment_duration:
            raise ConfigError(
                f"max_age_seconds ({self.max_age_seconds}) must cover at least one segment "
                f"of {self.segment_duration}s"
            )

    @property
    def max_segments(self) -> int:
        # round() first so 0.3 / 0.1 style float noise cannot lose a slot
        return math.floor(round(self.max_age_seconds / self.segment_duration, 9))

    @classmethod
    def from_hours(cls, segment_duration: float, hours: float) -> "RetentionPolicy":
        return cls(segment_duration=float(segment_duration), max_age_seconds=float(hours) * 3600.0)

    @classmethod
    def fixed_count(cls, segment_duration: float, count: int) -> "RetentionPolicy":
        if count < 1:
            raise ConfigError(f"segment_count must be >= 1 (got {count})")
        return cls(segment_duration=float(segment_duration), max_age_seconds=float(segment_duration) * count)


@dataclass
class ReconcileReport:
    tag: str
    retained: int = 0
    evicted: dict[int, str] = field(default_factory=dict)
    orphan_thumbnails: list[int] = field(default_factory=list)
    drift: DriftDetected | None = None
    errors: list[StoreIOError] = field(default_factory=list)
    playlist_written: bool = False
    playlist_error: PlaylistWriteFailure | None = None
    aborted: bool = False
    finished_at: float = 0.0
    elapsed: float = 0.0

    def summary(self) -> dict[str, object]:
        return {
            "retained": self.retained,
            "evicted": len(self.evicted),
            "orphan_thumbnails": len(self.orphan_thumbnails),
            "drift": str(self.drift) if self.drift else None,
            "errors": [str(exc) for exc in self.errors],
            "playlist_written": self.playlist_written,
            "playlist_error": str(self.playlist_error) if self.playlist_error else None,
            "aborted": self.aborted,
            "finished_at": self.finished_at,
            "elapsed": round(self.elapsed, 4),
        }


class RetentionEngine:
    """Owns the Segment Map for one tag and enforces its RetentionPolicy."""

    def __init__(
        self,
        store: SegmentStore,
        policy: RetentionPolicy,
        *,
        on_commit: Callable[[SegmentMap], object] | None = None,
        executor: Executor | None = None,
        clock: Callable[[], float] = time.time,
        ring: bool = True,
    ) -> None:
        self.store = store
        self.policy = policy
        self.ring = ring
        self._on_commit = on_commit
        self._executor = executor
        self._clock = clock
        self._log = logging.getLogger(f"ringdvr.retention.{store.tag}")

        self._lock = threading.Lock()
        self._map = SegmentMap()
        self._has_reconciled = False
        self._last_report: ReconcileReport | None = None

        # single-flight gate for the async triggers
        self._task: asyncio.Task[ReconcileReport] | None = None
        self._dirty = False

    @property
    def tag(self) -> str:
        return self.store.tag

    def snapshot(self) -> SegmentMap:
        """Map committed by the most recent completed reconciliation."""
        return self._map

    @property
    def last_report(self) -> ReconcileReport | None:
        return self._last_report

    # --- synchronous core ---
    def reconcile(self) -> ReconcileReport:
        with self._lock:
            return self._reconcile_locked()

    def _reconcile_locked(self) -> ReconcileReport:
        started = time.monotonic()
        now = self._clock()
        report = ReconcileReport(tag=self.tag)
        previous = self._map

        try:
            scan = self.store.scan()
        except StoreIOError as exc:
            self._log.warning("scan failed, keeping previous map: %s", exc)
            report.errors.append(exc)
            report.aborted = True
            report.retained = len(previous)
            return self._finish(report, started)
        report.errors.extend(scan.errors)

        if self._has_reconciled:
            appeared = {
                idx
                for idx in scan.segments
                if self.ring and idx not in previous and idx >= self.policy.max_segments
            }
            vanished = {idx for idx in previous if idx not in scan.segments}
            if appeared or vanished:
                report.drift = DriftDetected(self.tag, appeared, vanished)
                self._log.info("%s; rebuilding from disk", report.drift)

        current = SegmentMap(
            SegmentInfo(
                index=idx,
                path=self.store.segment_path(idx),
                created_at=stat.created_at,
                size_bytes=stat.size_bytes,
                thumbnail_path=self.store.thumbnail_path(idx) if idx in scan.thumbnails else None,
            )
            for idx, stat in scan.segments.items()
        )

        evict = self._select_evictions(current, now)
        for idx, reason in evict.items():
            info = current[idx]
            try:
                self.store.delete(info.path)
            except StoreIOError as exc:
                # Condemned either way; the next sweep retries the delete.
                self._log.warning("evict %s (%s) failed: %s", info.name, reason, exc)
                report.errors.append(exc)
            if info.thumbnail_path is not None:
                self._delete_thumbnail(idx, report)

        for idx in sorted(scan.thumbnails - set(scan.segments)):
            if self._delete_thumbnail(idx, report):
                report.orphan_thumbnails.append(idx)

        committed = current.without(evict)
        self._map = committed
        self._has_reconciled = True
        report.evicted = evict
        report.retained = len(committed)
        if evict:
            self._log.info(
                "evicted %d segment(s), retaining %d/%d",
                len(evict),
                len(committed),
                self.policy.max_segments,
            )

        if self._on_commit is not None:
            try:
                self._on_commit(committed)
            except PlaylistWriteFailure as exc:
                self._log.warning("%s; retrying on next reconciliation", exc)
                report.playlist_error = exc
            else:
                report.playlist_written = True

        return self._finish(report, started)

    def republish(self) -> object:
        """Re-run the commit hook against the current snapshot.

        Holds the reconcile lock so a manual rewrite can never interleave
        with the rewrite of an in-flight reconciliation.
        """
        with self._lock:
            if self._on_commit is None:
                return None
            return self._on_commit(self._map)

    def _finish(self, report: ReconcileReport, started: float) -> ReconcileReport:
        report.finished_at = self._clock()
        report.elapsed = time.monotonic() - started
        self._last_report = report
        return report

    def _select_evictions(self, current: SegmentMap, now: float) -> dict[int, str]:
        ordered = current.chronological()
        newest = ordered[-1] if ordered else None
        evict: dict[int, str] = {}
        for info in ordered:
            age = info.age(now)
            if age > self.policy.max_age_seconds:
                evict[info.index] = EVICT_AGE
            elif info.size_bytes == 0 and info is not newest and age > self.policy.segment_duration:
                # aborted write left an empty slot behind
                evict[info.index] = EVICT_EMPTY

        survivors = [info for info in ordered if info.index not in evict]
        excess = len(survivors) - self.policy.max_segments
        for info in survivors[: max(0, excess)]:
            evict[info.index] = EVICT_COUNT
        return evict

    def _delete_thumbnail(self, index: int, report: ReconcileReport) -> bool:
        try:
            return self.store.delete(self.store.thumbnail_path(index))
        except StoreIOError as exc:
            self._log.warning("thumbnail cleanup failed: %s", exc)
            report.errors.append(exc)
            return False

    # --- ring allocation ---
    def allocate_next_index(self) -> int:
        """Index the encoder should write next.

        Below capacity this is the smallest free slot in
        ``[0, max_segments)``; at capacity it is the oldest retained slot,
        which the encoder overwrites instead of growing the index space.
        Without a ring (the encoder prunes its own files) indices only grow.

        Files left above the ring after the window shrank are never handed
        out; they count towards the limit until count eviction drains them,
        and meanwhile the free in-ring slots are filled first.
        """
        snapshot = self._map
        if not self.ring:
            return max(snapshot, default=-1) + 1
        capacity = self.policy.max_segments
        in_ring = [info for info in snapshot.chronological() if info.index < capacity]
        if len(in_ring) < capacity:
            for idx in range(capacity):
                if idx not in snapshot:
                    return idx
        return in_ring[0].index

    # --- async single-flight gate ---
    def trigger(self, reason: str = "manual") -> "asyncio.Task[ReconcileReport]":
        """Request a reconciliation without waiting for it.

        If one is already in flight the request is folded into a single
        follow-up run; the returned task resolves with the report of the
        last run it performed.
        """
        self._dirty = True
        task = self._task
        if task is None or task.done():
            self._log.debug("reconcile scheduled (%s)", reason)
            task = asyncio.get_running_loop().create_task(
                self._drain(), name=f"reconcile-{self.tag}"
            )
            task.add_done_callback(self._log_task_failure)
            self._task = task
        else:
            self._log.debug("reconcile coalesced (%s)", reason)
        return task

    async def reconcile_async(self, reason: str = "manual") -> ReconcileReport:
        return await asyncio.shield(self.trigger(reason))

    async def _drain(self) -> ReconcileReport:
        loop = asyncio.get_running_loop()
        self._dirty = False
        report = await loop.run_in_executor(self._executor, self.reconcile)
        while self._dirty:
            self._dirty = False
            report = await loop.run_in_executor(self._executor, self.reconcile)
        return report

    async def settle(self) -> None:
        """Wait for the in-flight reconciliation, dropping any queued follow-up."""
        task = self._task
        if task is None or task.done():
            return
        self._dirty = False
        # failures are reported by _log_task_failure
        await asyncio.wait({task})

    def _log_task_failure(self, task: "asyncio.Task[ReconcileReport]") -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self._log.error("reconciliation crashed", exc_info=exc)

    async def run_periodic(self, interval: float) -> None:
        """Backstop timer: reconcile every ``interval`` seconds forever."""
        interval = max(0.5, float(interval))
        while True:
            try:
                await self.reconcile_async("timer")
            except asyncio.CancelledError:
                raise
            except Exception:  # noqa: BLE001 - timer must survive bad sweeps
                self._log.exception("periodic reconcile failed")
            await asyncio.sleep(interval)

    # --- status ---
    def describe(self) -> dict[str, object]:
        snapshot = self._map
        oldest = snapshot.oldest()
        newest = snapshot.newest()
        report = self._last_report
        return {
            "retained": len(snapshot),
            "max_segments": self.policy.max_segments,
            "segment_duration": self.policy.segment_duration,
            "max_age_seconds": self.policy.max_age_seconds,
            "oldest": oldest.created_at if oldest else None,
            "newest": newest.created_at if newest else None,
            "next_index": self.allocate_next_index(),
            "total_bytes": snapshot.total_bytes(),
            "last_reconcile": report.summary() if report else None,
        }
