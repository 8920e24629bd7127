"""Exception taxonomy shared by the retention engine and encoder supervisor."""
from __future__ import annotations

from collections.abc import Iterable


class DvrError(Exception):
    """Base class for recoverable ringdvr failures."""


class ConfigError(DvrError):
    """Raised when stream or retention settings are unusable."""


class SpawnFailure(DvrError):
    """Raised when the encoder binary cannot be launched."""

    def __init__(self, tag: str, command: str, reason: str) -> None:
        super().__init__(f"[{tag}] failed to spawn {command!r}: {reason}")
        self.tag = tag
        self.command = command
        self.reason = reason


class ProcessCrashed(DvrError):
    """The encoder exited while its session was still meant to be running."""

    def __init__(self, tag: str, exit_code: int | None) -> None:
        super().__init__(f"[{tag}] encoder exited unexpectedly (code={exit_code})")
        self.tag = tag
        self.exit_code = exit_code


class StoreIOError(DvrError):
    """A scan, stat or delete against the segment store failed."""

    def __init__(self, path: str, op: str, cause: OSError) -> None:
        super().__init__(f"{op} failed for {path}: {cause}")
        self.path = path
        self.op = op
        self.cause = cause


class PlaylistWriteFailure(DvrError):
    """The manifest could not be replaced; the previous one is still valid."""

    def __init__(self, path: str, cause: OSError) -> None:
        super().__init__(f"failed to write playlist {path}: {cause}")
        self.path = path
        self.cause = cause


class DriftDetected(DvrError):
    """The Segment Map and the store disagreed before a rebuild."""

    def __init__(self, tag: str, appeared: Iterable[int], vanished: Iterable[int]) -> None:
        self.tag = tag
        self.appeared = tuple(sorted(appeared))
        self.vanished = tuple(sorted(vanished))
        super().__init__(
            f"[{tag}] drift: {len(self.appeared)} unexpected file(s), "
            f"{len(self.vanished)} missing file(s)"
        )


class SupervisorStateError(DvrError):
    """An administrative request is not valid in the session's current state."""
