#!/usr/bin/env python3
"""
Dual-output coordinator (per-tag pipeline orchestration).

One camera feeds two completely separate pipelines:
- "dvr":  long retention window, coarse segments (default 48 h of 30 s).
- "live": a handful of short segments for near-real-time playback.

Each tag owns its store subdirectory, retention engine, playlist maintainer,
encoder supervisor and periodic reconcile timer. The only things the tags
share are the source URL/transport and the bounded I/O thread pool, so an
eviction storm or an encoder crash on one tag never touches the other.

Usage:
- daemon: ``coord = DualOutputCoordinator.from_config(get_cfg())``,
  ``await coord.open()``, ``await coord.start_all()``.
- web_api: calls ``status()``, ``start()``, ``stop()``, ``force_reconcile()``.
"""

from __future__ import annotations

import asyncio
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Iterable

from ringdvr.encoder_config import EncoderConfig, build_ffmpeg_command, redact_command
from ringdvr.encoder_supervisor import EncoderSupervisor, SessionState, SpawnFn, spawn_subprocess
from ringdvr.errors import ConfigError, SupervisorStateError
from ringdvr.playlist import Playlist, PlaylistMaintainer
from ringdvr.retention import ReconcileReport, RetentionEngine, RetentionPolicy
from ringdvr.segment_store import SegmentStore

DVR_TAG = "dvr"
LIVE_TAG = "live"


@dataclass(frozen=True)
class RestartSettings:
    delay_sec: float = 5.0
    max_restarts: int = 0
    crash_loop_threshold: int = 5
    crash_loop_window_sec: float = 120.0
    intentional_exit_codes: tuple[int, ...] = (255, -15, -2)
    stop_grace_sec: float = 5.0
    stderr_tail_lines: int = 50


@dataclass(frozen=True)
class StreamSettings:
    tag: str
    policy: RetentionPolicy
    source_url: str
    transport: str = "udp"
    reconcile_interval_sec: float = 60.0
    encoder_deletes_segments: bool = False
    codec_args: tuple[str, ...] = field(default_factory=tuple)
    binary: str = "ffmpeg"
    log_level: str = "info"


class StreamPipeline:
    """Store + engine + maintainer + supervisor for a single tag."""

    def __init__(
        self,
        settings: StreamSettings,
        recordings_dir: Path,
        executor: ThreadPoolExecutor,
        *,
        restart: RestartSettings | None = None,
        spawn: SpawnFn = spawn_subprocess,
        clock: Callable[[], float] = time.time,
    ) -> None:
        restart = restart or RestartSettings()
        self.settings = settings
        self.tag = settings.tag
        self._executor = executor
        self._log = logging.getLogger(f"ringdvr.coordinator.{self.tag}")

        self.store = SegmentStore(Path(recordings_dir) / self.tag, self.tag)
        self.maintainer = PlaylistMaintainer(self.store, settings.policy.segment_duration)
        self.engine = RetentionEngine(
            self.store,
            settings.policy,
            on_commit=self.maintainer.rewrite,
            executor=executor,
            clock=clock,
            ring=not settings.encoder_deletes_segments,
        )
        self.supervisor = EncoderSupervisor(
            self.tag,
            self._prepare_command,
            spawn=spawn,
            restart_delay=restart.delay_sec,
            stop_grace=restart.stop_grace_sec,
            intentional_exit_codes=restart.intentional_exit_codes,
            max_restarts=restart.max_restarts,
            crash_loop_threshold=restart.crash_loop_threshold,
            crash_loop_window=restart.crash_loop_window_sec,
            stderr_tail_lines=restart.stderr_tail_lines,
            on_segment_opened=self._on_segment_opened,
            segment_matcher=lambda name: self.store.parse_segment_name(name) is not None,
        )
        self._timer: asyncio.Task[None] | None = None
        # per-launch copies only differ in start_index
        self.encoder_base = self._build_encoder_config()

    def _build_encoder_config(self) -> EncoderConfig:
        s = self.settings
        return EncoderConfig(
            tag=self.tag,
            source_url=s.source_url,
            transport=s.transport,
            segment_pattern=self.store.segment_pattern(),
            scratch_list_path=self.store.encoder_list_path,
            segment_duration=s.policy.segment_duration,
            list_size=s.policy.max_segments,
            wrap=None if s.encoder_deletes_segments else s.policy.max_segments,
            encoder_deletes_segments=s.encoder_deletes_segments,
            codec_args=tuple(s.codec_args),
            binary=s.binary,
            log_level=s.log_level,
        )

    async def _prepare_command(self) -> list[str]:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(self._executor, self.store.ensure_dir)
        # Startup reconciliation: the ring position comes from disk, never memory.
        await self.engine.reconcile_async("encoder start")
        index = self.engine.allocate_next_index()
        cmd = build_ffmpeg_command(self.encoder_base.with_start_index(index))
        self._log.info("launching encoder at index %d: %s", index, redact_command(cmd))
        return cmd

    def _on_segment_opened(self, name: str) -> None:
        self.engine.trigger(f"opened {name}")

    # --- timer ---
    def start_timer(self) -> None:
        if self._timer is not None and not self._timer.done():
            return
        self._timer = asyncio.get_running_loop().create_task(
            self.engine.run_periodic(self.settings.reconcile_interval_sec),
            name=f"reconcile-timer-{self.tag}",
        )

    async def stop_timer(self) -> None:
        timer, self._timer = self._timer, None
        if timer is None:
            return
        timer.cancel()
        try:
            await timer
        except asyncio.CancelledError:
            pass

    # --- status ---
    def status(self) -> dict[str, Any]:
        retention = self.engine.describe()
        return {
            "tag": self.tag,
            "state": self.supervisor.state.value,
            "retained": retention["retained"],
            "oldest": retention["oldest"],
            "newest": retention["newest"],
            "next_index": retention["next_index"],
            "manifest": self.store.manifest_path.name,
            "timer_running": self._timer is not None and not self._timer.done(),
            "retention": retention,
            "encoder": self.supervisor.describe(),
        }


class DualOutputCoordinator:
    def __init__(
        self,
        pipelines: Iterable[StreamPipeline],
        executor: ThreadPoolExecutor,
    ) -> None:
        self._pipelines: dict[str, StreamPipeline] = {}
        for pipeline in pipelines:
            if pipeline.tag in self._pipelines:
                raise ConfigError(f"duplicate stream tag: {pipeline.tag}")
            self._pipelines[pipeline.tag] = pipeline
        self._executor = executor
        self._log = logging.getLogger("ringdvr.coordinator")
        self._opened = False

    @classmethod
    def from_config(
        cls,
        cfg: dict[str, Any],
        *,
        spawn: SpawnFn = spawn_subprocess,
        clock: Callable[[], float] = time.time,
    ) -> "DualOutputCoordinator":
        camera = cfg.get("camera", {})
        encoder = cfg.get("encoder", {})
        restart_cfg = cfg.get("restart", {})
        recordings_dir = Path(cfg.get("paths", {}).get("recordings_dir", "./recordings")).expanduser()
        workers = max(1, int(cfg.get("retention", {}).get("io_workers", 2)))

        source_url = str(camera.get("rtsp_url", "")).strip()
        if not source_url:
            raise ConfigError("camera.rtsp_url is empty")
        transport = str(camera.get("rtsp_transport", "udp")).lower()

        restart = RestartSettings(
            delay_sec=float(restart_cfg.get("delay_sec", 5.0)),
            max_restarts=int(restart_cfg.get("max_restarts", 0)),
            crash_loop_threshold=int(restart_cfg.get("crash_loop_threshold", 5)),
            crash_loop_window_sec=float(restart_cfg.get("crash_loop_window_sec", 120.0)),
            intentional_exit_codes=tuple(int(c) for c in restart_cfg.get("intentional_exit_codes", (255, -15, -2))),
            stop_grace_sec=float(encoder.get("stop_grace_sec", 5.0)),
            stderr_tail_lines=int(encoder.get("stderr_tail_lines", 50)),
        )

        def _settings(tag: str, section: dict[str, Any], policy: RetentionPolicy) -> StreamSettings:
            return StreamSettings(
                tag=tag,
                policy=policy,
                source_url=source_url,
                transport=transport,
                reconcile_interval_sec=float(section.get("reconcile_interval_sec", 60.0)),
                encoder_deletes_segments=bool(section.get("encoder_deletes_segments", False)),
                codec_args=tuple(str(a) for a in section.get("codec_args", ())),
                binary=str(encoder.get("binary", "ffmpeg")),
                log_level=str(encoder.get("log_level", "info")),
            )

        settings: list[StreamSettings] = []
        dvr = cfg.get("dvr", {})
        if dvr.get("enabled", True):
            policy = RetentionPolicy.from_hours(float(dvr.get("segment_duration", 30)), float(dvr.get("retention_hours", 48)))
            settings.append(_settings(DVR_TAG, dvr, policy))
        live = cfg.get("live", {})
        if live.get("enabled", True):
            policy = RetentionPolicy.fixed_count(float(live.get("segment_duration", 2)), int(live.get("segment_count", 6)))
            settings.append(_settings(LIVE_TAG, live, policy))
        if not settings:
            raise ConfigError("both dvr and live pipelines are disabled")

        executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="ringdvr_io")
        pipelines = [
            StreamPipeline(s, recordings_dir, executor, restart=restart, spawn=spawn, clock=clock)
            for s in settings
        ]
        return cls(pipelines, executor)

    # --- lookup ---
    @property
    def tags(self) -> list[str]:
        return list(self._pipelines)

    def pipeline(self, tag: str) -> StreamPipeline:
        """Raises KeyError for unknown tags."""
        return self._pipelines[tag]

    # --- lifecycle ---
    async def open(self) -> None:
        """Create store directories and start every periodic reconcile timer."""
        if self._opened:
            return
        loop = asyncio.get_running_loop()
        for pipeline in self._pipelines.values():
            await loop.run_in_executor(self._executor, pipeline.store.ensure_dir)
            pipeline.start_timer()
        self._opened = True
        self._log.info("pipelines ready: %s", ", ".join(self.tags))

    async def close(self) -> None:
        await self.stop_all()
        for pipeline in self._pipelines.values():
            await pipeline.stop_timer()
        # nothing may still be queued on the pool when it is shut down
        await asyncio.gather(*(p.engine.settle() for p in self._pipelines.values()))
        self._opened = False
        self.shutdown_executor()
        self._log.info("coordinator closed")

    def shutdown_executor(self) -> None:
        self._executor.shutdown(wait=True, cancel_futures=True)

    # --- administrative controls ---
    async def start(self, tag: str) -> bool:
        pipeline = self.pipeline(tag)
        try:
            state = await pipeline.supervisor.start()
        except SupervisorStateError as exc:
            self._log.info("%s", exc)
            return False
        return state is not SessionState.IDLE

    async def stop(self, tag: str) -> bool:
        pipeline = self.pipeline(tag)
        try:
            await pipeline.supervisor.stop()
        except SupervisorStateError as exc:
            self._log.info("%s", exc)
            return False
        return True

    async def restart(self, tag: str) -> SessionState:
        return await self.pipeline(tag).supervisor.restart()

    async def force_reconcile(self, tag: str) -> ReconcileReport:
        return await self.pipeline(tag).engine.reconcile_async("manual")

    async def rewrite(self, tag: str) -> Playlist | None:
        engine = self.pipeline(tag).engine
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, engine.republish)

    def segments(self, tag: str) -> list[dict[str, object]]:
        snapshot = self.pipeline(tag).engine.snapshot()
        return [info.to_dict() for info in snapshot.chronological()]

    def status(self, tag: str) -> dict[str, Any]:
        return self.pipeline(tag).status()

    def status_all(self) -> dict[str, Any]:
        return {tag: pipeline.status() for tag, pipeline in self._pipelines.items()}

    async def start_all(self) -> dict[str, bool]:
        results = await asyncio.gather(*(self.start(tag) for tag in self._pipelines))
        return dict(zip(self._pipelines, results))

    async def stop_all(self) -> dict[str, bool]:
        active = [
            tag for tag, pipeline in self._pipelines.items()
            if pipeline.supervisor.state is not SessionState.IDLE
        ]
        stopped = await asyncio.gather(*(self.stop(tag) for tag in active))
        results = {tag: False for tag in self._pipelines}
        results.update(zip(active, stopped))
        return results
