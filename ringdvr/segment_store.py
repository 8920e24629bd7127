"""Filesystem primitives for one stream tag's segment directory.

Layout under ``<recordings_dir>/<tag>/``::

    <tag>_<index>.ts          segment written by the encoder
    <tag>_<index>.jpg         optional thumbnail, same lifecycle as the segment
    <tag>.m3u8                manifest maintained by ringdvr
    <tag>.encoder.m3u8        scratch list written by the encoder itself

The mapping ``index -> filename`` never changes between releases; startup
reconciliation relies on it to attribute existing files to ring slots.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path

from ringdvr.errors import StoreIOError

SEGMENT_SUFFIX = ".ts"
THUMBNAIL_SUFFIX = ".jpg"
MANIFEST_SUFFIX = ".m3u8"
ENCODER_LIST_SUFFIX = ".encoder.m3u8"


@dataclass(frozen=True)
class SegmentStat:
    created_at: float
    size_bytes: int


@dataclass
class ScanResult:
    segments: dict[int, SegmentStat] = field(default_factory=dict)
    thumbnails: set[int] = field(default_factory=set)
    errors: list[StoreIOError] = field(default_factory=list)


def created_at_from_stat(st: os.stat_result) -> float:
    # Ring slots are truncated and rewritten in place, so the last write time
    # is when the current incarnation of the slot was produced.
    return st.st_mtime


class SegmentStore:
    """List, stat and delete the numbered files of one stream tag."""

    def __init__(self, root_dir: str | os.PathLike[str], tag: str) -> None:
        if not re.fullmatch(r"[a-z][a-z0-9]*", tag):
            raise ValueError(f"invalid stream tag: {tag!r}")
        self.tag = tag
        self.root_dir = Path(root_dir)
        self._segment_re = re.compile(rf"^{tag}_(0|[1-9][0-9]*){re.escape(SEGMENT_SUFFIX)}$")
        self._thumbnail_re = re.compile(rf"^{tag}_(0|[1-9][0-9]*){re.escape(THUMBNAIL_SUFFIX)}$")

    # --- naming convention ---
    def segment_name(self, index: int) -> str:
        return f"{self.tag}_{index}{SEGMENT_SUFFIX}"

    def thumbnail_name(self, index: int) -> str:
        return f"{self.tag}_{index}{THUMBNAIL_SUFFIX}"

    def segment_path(self, index: int) -> Path:
        return self.root_dir / self.segment_name(index)

    def thumbnail_path(self, index: int) -> Path:
        return self.root_dir / self.thumbnail_name(index)

    def segment_pattern(self) -> str:
        """printf-style filename pattern handed to the encoder."""
        return str(self.root_dir / f"{self.tag}_%d{SEGMENT_SUFFIX}")

    @property
    def manifest_path(self) -> Path:
        return self.root_dir / f"{self.tag}{MANIFEST_SUFFIX}"

    @property
    def encoder_list_path(self) -> Path:
        return self.root_dir / f"{self.tag}{ENCODER_LIST_SUFFIX}"

    def parse_segment_name(self, name: str) -> int | None:
        match = self._segment_re.fullmatch(name)
        return int(match.group(1)) if match else None

    def parse_thumbnail_name(self, name: str) -> int | None:
        match = self._thumbnail_re.fullmatch(name)
        return int(match.group(1)) if match else None

    # --- I/O ---
    def ensure_dir(self) -> None:
        try:
            self.root_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StoreIOError(str(self.root_dir), "mkdir", exc) from exc

    def scan(self) -> ScanResult:
        """Stat every file that follows the naming convention.

        Entries that vanish between listing and stat are skipped silently;
        other per-entry failures are collected in ``errors`` so one bad file
        does not abort the sweep. Failure to list the directory raises.
        """
        result = ScanResult()
        try:
            entries = list(os.scandir(self.root_dir))
        except FileNotFoundError:
            self.ensure_dir()
            return result
        except OSError as exc:
            raise StoreIOError(str(self.root_dir), "scandir", exc) from exc

        for entry in entries:
            index = self.parse_segment_name(entry.name)
            if index is not None:
                try:
                    st = entry.stat(follow_symlinks=False)
                except FileNotFoundError:
                    continue
                except OSError as exc:
                    result.errors.append(StoreIOError(entry.path, "stat", exc))
                    continue
                result.segments[index] = SegmentStat(
                    created_at=created_at_from_stat(st),
                    size_bytes=st.st_size,
                )
                continue
            thumb = self.parse_thumbnail_name(entry.name)
            if thumb is not None:
                result.thumbnails.add(thumb)
        return result

    def delete(self, path: Path) -> bool:
        """Remove ``path``. Returns False when it was already gone."""
        try:
            os.remove(path)
        except FileNotFoundError:
            return False
        except OSError as exc:
            raise StoreIOError(str(path), "delete", exc) from exc
        return True
