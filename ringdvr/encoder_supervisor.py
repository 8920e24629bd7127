"""Encoder process supervisor.

State machine per stream tag::

    IDLE -> STARTING -> RUNNING -> STOPPING -> IDLE
                           |
                           +-> CRASHED_BACKOFF -> STARTING ...

Restart policy:
- exit while a stop was requested: IDLE, never restarted.
- exit with a code listed in ``intentional_exit_codes`` (ffmpeg's 255 after
  SIGINT/``q``, or death by SIGTERM/SIGINT from outside): IDLE, logged as an
  external termination.
- any other exit, including 0 and an unknown code: the source may just have
  dropped, so wait ``restart_delay`` and start again.
- spawn failures follow the same backoff path and are kept in
  ``last_error`` for the status endpoint.

The encoder's stderr is scanned for ``Opening '<file>' for writing``; a
match is only a hint that a segment rolled over. The periodic reconcile
timer owned by the coordinator is what guarantees convergence.
"""

from __future__ import annotations

import asyncio
import logging
import re
import signal
import time
from collections import deque
from collections.abc import Awaitable, Callable, Iterable
from enum import Enum
from pathlib import Path
from typing import Optional, Protocol

from ringdvr.errors import DvrError, ProcessCrashed, SpawnFailure, SupervisorStateError

_OPENING_RE = re.compile(r"Opening '([^']+)' for writing")


class SessionState(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    CRASHED_BACKOFF = "crashed_backoff"


class EncoderProcess(Protocol):
    pid: int
    returncode: Optional[int]
    stderr: Optional[asyncio.StreamReader]

    async def wait(self) -> int: ...

    def send_signal(self, sig: int) -> None: ...

    def kill(self) -> None: ...


SpawnFn = Callable[[list[str]], Awaitable[EncoderProcess]]


async def spawn_subprocess(cmd: list[str]) -> EncoderProcess:
    return await asyncio.create_subprocess_exec(
        *cmd,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.DEVNULL,
        stderr=asyncio.subprocess.PIPE,
        start_new_session=True,
    )


class EncoderSupervisor:
    def __init__(
        self,
        tag: str,
        prepare: Callable[[], Awaitable[list[str]]],
        *,
        spawn: SpawnFn = spawn_subprocess,
        restart_delay: float = 5.0,
        stop_grace: float = 5.0,
        intentional_exit_codes: Iterable[int] = (255, -15, -2),
        max_restarts: int = 0,
        crash_loop_threshold: int = 5,
        crash_loop_window: float = 120.0,
        stderr_tail_lines: int = 50,
        on_segment_opened: Callable[[str], None] | None = None,
        segment_matcher: Callable[[str], bool] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.tag = tag
        self._prepare = prepare
        self._spawn = spawn
        self.restart_delay = max(0.0, float(restart_delay))
        self.stop_grace = max(0.0, float(stop_grace))
        self.intentional_exit_codes = frozenset(int(code) for code in intentional_exit_codes)
        self.max_restarts = max(0, int(max_restarts))
        self.crash_loop_threshold = max(1, int(crash_loop_threshold))
        self.crash_loop_window = float(crash_loop_window)
        self._on_segment_opened = on_segment_opened
        self._segment_matcher = segment_matcher
        self._clock = clock
        self._log = logging.getLogger(f"ringdvr.supervisor.{tag}")

        self._state = SessionState.IDLE
        self.history: deque[SessionState] = deque(maxlen=64)
        self._task: asyncio.Task[None] | None = None
        self._proc: EncoderProcess | None = None
        self._stop_requested = False
        self._stop_event = asyncio.Event()
        self._attempted = asyncio.Event()

        self.pid: int | None = None
        self.started_at: float | None = None
        self.restart_count = 0
        self._consecutive_failures = 0
        self._crash_times: deque[float] = deque(maxlen=self.crash_loop_threshold)
        self.last_exit_code: int | None = None
        self.last_error: DvrError | None = None
        self.stderr_tail: deque[str] = deque(maxlen=max(1, int(stderr_tail_lines)))

    # --- state ---
    @property
    def state(self) -> SessionState:
        return self._state

    def _set_state(self, state: SessionState) -> None:
        if state is self._state:
            return
        self._log.debug("state %s -> %s", self._state.value, state.value)
        self._state = state
        self.history.append(state)

    @property
    def crash_loop(self) -> bool:
        if len(self._crash_times) < self.crash_loop_threshold:
            return False
        return (self._crash_times[-1] - self._crash_times[0]) <= self.crash_loop_window

    # --- controls ---
    async def start(self) -> SessionState:
        """Launch the encoder. Returns once the first spawn attempt resolved."""
        if self._state is not SessionState.IDLE:
            raise SupervisorStateError(f"{self.tag}: start() while {self._state.value}")
        self._stop_requested = False
        self._stop_event = asyncio.Event()
        self._attempted = asyncio.Event()
        self._consecutive_failures = 0
        self._set_state(SessionState.STARTING)
        self._task = asyncio.get_running_loop().create_task(
            self._run(), name=f"encoder-{self.tag}"
        )
        attempted = asyncio.ensure_future(self._attempted.wait())
        await asyncio.wait({attempted, self._task}, return_when=asyncio.FIRST_COMPLETED)
        attempted.cancel()
        return self._state

    async def stop(self) -> None:
        if self._state is SessionState.IDLE:
            raise SupervisorStateError(f"{self.tag}: stop() while idle")
        self._stop_requested = True
        self._stop_event.set()
        proc = self._proc
        if proc is not None and proc.returncode is None:
            self._set_state(SessionState.STOPPING)
            await self._terminate(proc)
        task = self._task
        if task is not None:
            await task
        self._set_state(SessionState.IDLE)

    async def restart(self) -> SessionState:
        if self._state is not SessionState.IDLE:
            await self.stop()
        return await self.start()

    # --- run loop ---
    async def _run(self) -> None:
        try:
            while not self._stop_requested:
                self._set_state(SessionState.STARTING)
                proc = await self._spawn_once()
                if proc is None:
                    if not await self._backoff():
                        break
                    continue
                if self._stop_requested:
                    await self._terminate(proc)
                    break

                started = self._clock()
                rc = await self._watch(proc)
                if self._stop_requested:
                    self._log.info("encoder stopped (rc=%s)", rc)
                    break
                if rc in self.intentional_exit_codes:
                    self._log.info("encoder terminated externally (rc=%s); not restarting", rc)
                    break

                if self._clock() - started > self.crash_loop_window:
                    self._consecutive_failures = 0
                crash = ProcessCrashed(self.tag, rc)
                self.last_error = crash
                last_line = self.stderr_tail[-1] if self.stderr_tail else ""
                self._log.warning("%s; last output: %s", crash, last_line or "<none>")
                if not await self._backoff():
                    break
        finally:
            self._proc = None
            self.pid = None
            self.started_at = None
            self._attempted.set()
            self._set_state(SessionState.IDLE)

    async def _spawn_once(self) -> EncoderProcess | None:
        cmd: list[str] = []
        try:
            cmd = await self._prepare()
            proc = await self._spawn(cmd)
        except asyncio.CancelledError:
            raise
        except SpawnFailure as exc:
            self._record_spawn_failure(exc)
            return None
        except (OSError, ValueError, DvrError) as exc:
            self._record_spawn_failure(SpawnFailure(self.tag, cmd[0] if cmd else "<unprepared>", str(exc)))
            return None

        self._proc = proc
        self.pid = proc.pid
        self.started_at = self._clock()
        self.stderr_tail.clear()
        self._set_state(SessionState.RUNNING)
        self._attempted.set()
        self._log.info("encoder running (pid=%s)", proc.pid)
        return proc

    def _record_spawn_failure(self, exc: SpawnFailure) -> None:
        self.last_error = exc
        self._log.error("%s", exc)
        self._attempted.set()

    async def _watch(self, proc: EncoderProcess) -> int | None:
        reader = None
        if proc.stderr is not None:
            reader = asyncio.get_running_loop().create_task(self._pump_stderr(proc.stderr))
        rc = await proc.wait()
        if reader is not None:
            try:
                # A grandchild holding the pipe must not wedge the supervisor.
                await asyncio.wait_for(reader, timeout=1.0)
            except asyncio.TimeoutError:
                reader.cancel()
        self.last_exit_code = rc
        self._proc = None
        self.pid = None
        return rc

    async def _backoff(self) -> bool:
        """Wait out the restart delay. False means give up or stop was requested."""
        self._consecutive_failures += 1
        self._crash_times.append(self._clock())
        if self.crash_loop:
            self._log.error(
                "crash loop: %d failures within %.0fs",
                self.crash_loop_threshold,
                self.crash_loop_window,
            )
        if self.max_restarts and self._consecutive_failures > self.max_restarts:
            self._log.error("giving up after %d consecutive failures", self.max_restarts)
            return False

        self._set_state(SessionState.CRASHED_BACKOFF)
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=self.restart_delay)
        except asyncio.TimeoutError:
            self.restart_count += 1
            self._log.info("restarting encoder (attempt %d)", self.restart_count)
            return True
        return False

    async def _terminate(self, proc: EncoderProcess) -> None:
        try:
            proc.send_signal(signal.SIGTERM)
        except ProcessLookupError:
            return
        try:
            rc = await asyncio.wait_for(proc.wait(), timeout=self.stop_grace)
            self._log.info("encoder terminated with rc=%s", rc)
            return
        except asyncio.TimeoutError:
            self._log.warning("encoder did not exit after SIGTERM; sending SIGKILL")
        try:
            proc.kill()
        except ProcessLookupError:
            return
        rc = await proc.wait()
        self._log.info("encoder killed; rc=%s", rc)

    async def _pump_stderr(self, stream: asyncio.StreamReader) -> None:
        while True:
            try:
                raw = await stream.readline()
            except ValueError:
                # line longer than the reader limit; the buffer was discarded
                continue
            if not raw:
                return
            line = raw.decode("utf-8", errors="replace").rstrip()
            if not line:
                continue
            self.stderr_tail.append(line)
            match = _OPENING_RE.search(line)
            if match is None:
                self._log.debug("%s", line)
                continue
            name = Path(match.group(1)).name
            if self._segment_matcher is not None and not self._segment_matcher(name):
                continue
            if self._on_segment_opened is not None:
                try:
                    self._on_segment_opened(name)
                except Exception:  # noqa: BLE001 - a hint must never kill the reader
                    self._log.exception("segment notification handler failed")

    # --- status ---
    def describe(self) -> dict[str, object]:
        uptime = None
        if self.started_at is not None and self._state is SessionState.RUNNING:
            uptime = round(self._clock() - self.started_at, 3)
        return {
            "state": self._state.value,
            "pid": self.pid,
            "uptime_sec": uptime,
            "restart_count": self.restart_count,
            "last_exit_code": self.last_exit_code,
            "last_error": str(self.last_error) if self.last_error else None,
            "spawn_failed": isinstance(self.last_error, SpawnFailure),
            "crash_loop": self.crash_loop,
            "stderr_tail": list(self.stderr_tail)[-10:],
        }
