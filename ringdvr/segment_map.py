"""Immutable index of the segments currently retained for one stream tag."""
from __future__ import annotations

import time
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True)
class SegmentInfo:
    index: int
    path: Path
    created_at: float
    size_bytes: int
    thumbnail_path: Path | None = None

    @property
    def name(self) -> str:
        return self.path.name

    def age(self, now: float | None = None) -> float:
        return (time.time() if now is None else now) - self.created_at

    def to_dict(self) -> dict[str, object]:
        return {
            "index": self.index,
            "name": self.name,
            "created_at": self.created_at,
            "size_bytes": self.size_bytes,
            "thumbnail": self.thumbnail_path.name if self.thumbnail_path else None,
        }


class SegmentMap(Mapping[int, SegmentInfo]):
    """Ordered-by-index mapping ``index -> SegmentInfo``.

    Instances are never mutated after construction; the retention engine
    publishes a new map after every committed reconciliation, so readers
    holding an older snapshot are never exposed to a half-applied sweep.
    """

    __slots__ = ("_entries",)

    def __init__(self, entries: Iterable[SegmentInfo] = ()) -> None:
        self._entries: dict[int, SegmentInfo] = {
            info.index: info for info in sorted(entries, key=lambda info: info.index)
        }

    def __getitem__(self, index: int) -> SegmentInfo:
        return self._entries[index]

    def __iter__(self) -> Iterator[int]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __repr__(self) -> str:
        return f"SegmentMap({len(self)} segments)"

    def chronological(self) -> list[SegmentInfo]:
        return sorted(self._entries.values(), key=lambda info: (info.created_at, info.index))

    def oldest(self) -> SegmentInfo | None:
        if not self._entries:
            return None
        return min(self._entries.values(), key=lambda info: (info.created_at, info.index))

    def newest(self) -> SegmentInfo | None:
        if not self._entries:
            return None
        return max(self._entries.values(), key=lambda info: (info.created_at, info.index))

    def total_bytes(self) -> int:
        return sum(info.size_bytes for info in self._entries.values())

    def without(self, indices: Iterable[int]) -> "SegmentMap":
        drop = set(indices)
        return SegmentMap(info for idx, info in self._entries.items() if idx not in drop)
