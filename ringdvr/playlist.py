"""Playlist (m3u8) model and the maintainer that keeps it in sync with disk.

The maintainer never trusts the previous manifest for *which* segments
exist; it only mines it for duration metadata and the media sequence. The
list of entries always comes from a committed ``SegmentMap`` snapshot.
"""
from __future__ import annotations

import logging
import math
import os
from dataclasses import dataclass, field
from pathlib import Path

from ringdvr.errors import PlaylistWriteFailure
from ringdvr.segment_map import SegmentMap
from ringdvr.segment_store import SegmentStore

PLAYLIST_VERSION = 3


@dataclass(frozen=True)
class PlaylistEntry:
    duration: float
    reference: str


@dataclass
class Playlist:
    target_duration: int
    media_sequence: int = 0
    version: int = PLAYLIST_VERSION
    entries: list[PlaylistEntry] = field(default_factory=list)

    def render(self) -> str:
        lines = [
            "#EXTM3U",
            f"#EXT-X-VERSION:{self.version}",
            f"#EXT-X-TARGETDURATION:{self.target_duration}",
            f"#EXT-X-MEDIA-SEQUENCE:{self.media_sequence}",
        ]
        for entry in self.entries:
            lines.append(f"#EXTINF:{entry.duration:.6f},")
            lines.append(entry.reference)
        return "\n".join(lines) + "\n"

    @classmethod
    def parse(cls, text: str) -> "Playlist":
        """Parse a manifest leniently.

        Unknown tags are ignored, and a reference without a preceding
        ``#EXTINF`` is dropped since it has no usable duration.
        """
        playlist = cls(target_duration=0)
        pending: float | None = None
        for raw in text.splitlines():
            line = raw.strip()
            if not line:
                continue
            if line.startswith("#EXT-X-VERSION:"):
                playlist.version = _parse_int(line.split(":", 1)[1], PLAYLIST_VERSION)
            elif line.startswith("#EXT-X-TARGETDURATION:"):
                playlist.target_duration = _parse_int(line.split(":", 1)[1], 0)
            elif line.startswith("#EXT-X-MEDIA-SEQUENCE:"):
                playlist.media_sequence = _parse_int(line.split(":", 1)[1], 0)
            elif line.startswith("#EXTINF:"):
                value = line.split(":", 1)[1].split(",", 1)[0]
                try:
                    pending = float(value)
                except ValueError:
                    pending = None
            elif line.startswith("#"):
                continue
            else:
                if pending is not None:
                    playlist.entries.append(PlaylistEntry(duration=pending, reference=line))
                pending = None
        return playlist

    def references(self) -> list[str]:
        return [entry.reference for entry in self.entries]

    def durations(self) -> dict[str, float]:
        return {entry.reference: entry.duration for entry in self.entries}


def _parse_int(value: str, default: int) -> int:
    try:
        return int(float(value.strip()))
    except ValueError:
        return default


def _read_text(path: Path, log: logging.Logger) -> str | None:
    try:
        return path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    except (OSError, UnicodeDecodeError) as exc:
        log.warning("unable to read %s: %s", path, exc)
        return None


def _read_playlist(path: Path, log: logging.Logger) -> Playlist | None:
    text = _read_text(path, log)
    return Playlist.parse(text) if text is not None else None


class PlaylistMaintainer:
    """Rewrite ``<tag>.m3u8`` from a Segment Map snapshot."""

    def __init__(self, store: SegmentStore, segment_duration: float) -> None:
        self.store = store
        self.segment_duration = float(segment_duration)
        self._log = logging.getLogger(f"ringdvr.playlist.{store.tag}")

    @property
    def path(self) -> Path:
        return self.store.manifest_path

    def read_current(self) -> Playlist | None:
        return _read_playlist(self.path, self._log)

    def build(self, snapshot: SegmentMap, previous: Playlist | None = None) -> Playlist:
        known: dict[str, float] = {}
        if previous is not None:
            known.update(previous.durations())
        # The encoder's own list is written as segments close, so its
        # durations are fresher than ours for reused slots.
        encoder_list = _read_playlist(self.store.encoder_list_path, self._log)
        if encoder_list is not None:
            known.update(encoder_list.durations())

        entries = [
            PlaylistEntry(
                duration=known.get(info.name, self.segment_duration),
                reference=info.name,
            )
            for info in snapshot.chronological()
        ]
        longest = max((entry.duration for entry in entries), default=self.segment_duration)
        target = max(1, math.ceil(max(longest, self.segment_duration)))
        return Playlist(
            target_duration=target,
            media_sequence=self._next_media_sequence(previous, entries),
            entries=entries,
        )

    @staticmethod
    def _next_media_sequence(previous: Playlist | None, entries: list[PlaylistEntry]) -> int:
        if previous is None:
            return 0
        old_refs = previous.references()
        if entries and entries[0].reference in old_refs:
            # Advance by however many old entries fell off the head.
            return previous.media_sequence + old_refs.index(entries[0].reference)
        return previous.media_sequence + len(old_refs)

    def rewrite(self, snapshot: SegmentMap) -> Playlist:
        """Write a manifest with exactly one entry per segment in ``snapshot``.

        Raises ``PlaylistWriteFailure`` if the new manifest could not be
        installed; the old one is left untouched in that case.
        """
        current_text = _read_text(self.path, self._log)
        previous = Playlist.parse(current_text) if current_text is not None else None
        playlist = self.build(snapshot, previous)
        payload = playlist.render()
        if payload == current_text:
            return playlist
        self._write_atomic(payload)
        self._log.debug("wrote %s (%d entries)", self.path.name, len(playlist.entries))
        return playlist

    def _write_atomic(self, payload: str) -> None:
        path = self.path
        tmp_path = path.with_name(f"{path.name}.tmp")
        try:
            with open(tmp_path, "w", encoding="utf-8") as handle:
                handle.write(payload)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_path, path)
        except OSError as exc:
            try:
                os.remove(tmp_path)
            except OSError:
                pass
            raise PlaylistWriteFailure(str(path), exc) from exc
