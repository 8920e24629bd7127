from __future__ import annotations

import asyncio
import signal

import pytest

from ringdvr.encoder_supervisor import EncoderSupervisor, SessionState
from ringdvr.errors import ProcessCrashed, SpawnFailure, SupervisorStateError


class FakeProcess:
    _next_pid = 4000

    def __init__(self, *, ignore_sigterm: bool = False):
        FakeProcess._next_pid += 1
        self.pid = FakeProcess._next_pid
        self.returncode = None
        self.stderr = asyncio.StreamReader()
        self.signals: list[int] = []
        self.ignore_sigterm = ignore_sigterm
        self._exited = asyncio.Event()

    def exit(self, code: int) -> None:
        if self.returncode is not None:
            return
        self.returncode = code
        self.stderr.feed_eof()
        self._exited.set()

    def emit(self, line: str) -> None:
        self.stderr.feed_data((line + "\n").encode())

    async def wait(self) -> int:
        await self._exited.wait()
        return self.returncode

    def send_signal(self, sig: int) -> None:
        self.signals.append(sig)
        if sig == signal.SIGTERM and not self.ignore_sigterm:
            self.exit(-signal.SIGTERM)

    def kill(self) -> None:
        self.signals.append(signal.SIGKILL)
        self.exit(-signal.SIGKILL)


class FakeSpawner:
    def __init__(self, *, failures: int = 0, ignore_sigterm: bool = False):
        self.failures = failures
        self.ignore_sigterm = ignore_sigterm
        self.commands: list[list[str]] = []
        self.procs: list[FakeProcess] = []

    async def __call__(self, cmd: list[str]) -> FakeProcess:
        self.commands.append(cmd)
        if self.failures:
            self.failures -= 1
            raise FileNotFoundError(2, "No such file or directory", cmd[0])
        proc = FakeProcess(ignore_sigterm=self.ignore_sigterm)
        self.procs.append(proc)
        return proc


async def _prepare() -> list[str]:
    return ["ffmpeg", "-i", "rtsp://camera/stream"]


async def _eventually(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


def _supervisor(spawner: FakeSpawner, **kwargs) -> EncoderSupervisor:
    kwargs.setdefault("restart_delay", 0.05)
    kwargs.setdefault("stop_grace", 0.2)
    return EncoderSupervisor("live", _prepare, spawn=spawner, **kwargs)


@pytest.mark.asyncio
async def test_start_runs_encoder():
    spawner = FakeSpawner()
    sup = _supervisor(spawner)

    state = await sup.start()

    assert state is SessionState.RUNNING
    assert sup.pid == spawner.procs[0].pid
    assert spawner.commands == [["ffmpeg", "-i", "rtsp://camera/stream"]]
    assert sup.describe()["state"] == "running"
    await sup.stop()


@pytest.mark.asyncio
@pytest.mark.parametrize("exit_code", [1, 0])
async def test_unexpected_exit_restarts_after_delay(exit_code):
    spawner = FakeSpawner()
    sup = _supervisor(spawner)
    await sup.start()

    spawner.procs[0].exit(exit_code)
    await _eventually(lambda: len(spawner.procs) == 2 and sup.state is SessionState.RUNNING)

    history = list(sup.history)
    backoff = history.index(SessionState.CRASHED_BACKOFF)
    assert history[backoff + 1] is SessionState.STARTING
    assert sup.restart_count == 1
    assert isinstance(sup.last_error, ProcessCrashed)
    assert sup.last_error.exit_code == exit_code
    assert sup.last_exit_code == exit_code
    await sup.stop()


@pytest.mark.asyncio
async def test_stop_leaves_session_idle_without_restart():
    spawner = FakeSpawner()
    sup = _supervisor(spawner)
    await sup.start()
    proc = spawner.procs[0]

    await sup.stop()
    assert sup.state is SessionState.IDLE
    assert proc.signals == [signal.SIGTERM]

    await asyncio.sleep(0.2)
    assert sup.state is SessionState.IDLE
    assert len(spawner.procs) == 1
    assert SessionState.CRASHED_BACKOFF not in sup.history


@pytest.mark.asyncio
async def test_stop_escalates_to_kill_after_grace():
    spawner = FakeSpawner(ignore_sigterm=True)
    sup = _supervisor(spawner, stop_grace=0.05)
    await sup.start()

    await sup.stop()

    assert spawner.procs[0].signals == [signal.SIGTERM, signal.SIGKILL]
    assert sup.state is SessionState.IDLE


@pytest.mark.asyncio
async def test_stop_cancels_pending_backoff():
    spawner = FakeSpawner()
    sup = _supervisor(spawner, restart_delay=5.0)
    await sup.start()
    spawner.procs[0].exit(1)
    await _eventually(lambda: sup.state is SessionState.CRASHED_BACKOFF)

    await asyncio.wait_for(sup.stop(), timeout=1.0)

    assert sup.state is SessionState.IDLE
    assert len(spawner.procs) == 1


@pytest.mark.asyncio
async def test_intentional_exit_code_is_not_restarted():
    spawner = FakeSpawner()
    sup = _supervisor(spawner)
    await sup.start()

    spawner.procs[0].exit(255)
    await _eventually(lambda: sup.state is SessionState.IDLE)
    await asyncio.sleep(0.2)

    assert len(spawner.procs) == 1
    assert sup.state is SessionState.IDLE


@pytest.mark.asyncio
async def test_spawn_failure_is_reported_and_retried():
    spawner = FakeSpawner(failures=1)
    sup = _supervisor(spawner)

    state = await sup.start()

    assert state is SessionState.CRASHED_BACKOFF
    assert isinstance(sup.last_error, SpawnFailure)
    assert sup.describe()["spawn_failed"] is True

    await _eventually(lambda: sup.state is SessionState.RUNNING)
    assert len(spawner.commands) == 2
    await sup.stop()


@pytest.mark.asyncio
async def test_invalid_transitions_raise():
    spawner = FakeSpawner()
    sup = _supervisor(spawner)

    with pytest.raises(SupervisorStateError):
        await sup.stop()

    await sup.start()
    with pytest.raises(SupervisorStateError):
        await sup.start()
    await sup.stop()


@pytest.mark.asyncio
async def test_restart_replaces_process():
    spawner = FakeSpawner()
    sup = _supervisor(spawner)
    await sup.start()

    state = await sup.restart()

    assert state is SessionState.RUNNING
    assert len(spawner.procs) == 2
    assert spawner.procs[0].signals == [signal.SIGTERM]
    await sup.stop()


@pytest.mark.asyncio
async def test_crash_loop_and_restart_cap():
    spawner = FakeSpawner()
    sup = _supervisor(spawner, restart_delay=0.01, max_restarts=1, crash_loop_threshold=2)
    await sup.start()

    spawner.procs[0].exit(1)
    await _eventually(lambda: len(spawner.procs) == 2 and sup.state is SessionState.RUNNING)
    spawner.procs[1].exit(1)
    await _eventually(lambda: sup.state is SessionState.IDLE)

    assert sup.crash_loop is True
    assert sup.describe()["crash_loop"] is True
    await asyncio.sleep(0.05)
    assert len(spawner.procs) == 2


@pytest.mark.asyncio
async def test_segment_open_lines_notify_matching_names_only():
    opened: list[str] = []
    spawner = FakeSpawner()
    sup = _supervisor(
        spawner,
        on_segment_opened=opened.append,
        segment_matcher=lambda name: name.startswith("live_") and name.endswith(".ts"),
    )
    await sup.start()
    proc = spawner.procs[0]

    proc.emit("[segment @ 0x55d0] Opening '/rec/live/live_3.ts' for writing")
    proc.emit("[segment @ 0x55d0] Opening '/rec/live/live.encoder.m3u8.tmp' for writing")
    proc.emit("frame=  100 fps= 25 q=-1.0 size=N/A time=00:00:04.00")
    proc.emit("[segment @ 0x55d0] Opening '/rec/live/live_4.ts' for writing")
    await _eventually(lambda: len(opened) == 2)

    assert opened == ["live_3.ts", "live_4.ts"]
    assert any("time=00:00:04.00" in line for line in sup.stderr_tail)
    await sup.stop()
