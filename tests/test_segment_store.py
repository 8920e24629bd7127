from __future__ import annotations

import os
from pathlib import Path

import pytest

from ringdvr.errors import StoreIOError
from ringdvr.segment_store import SegmentStore


def test_naming_convention_is_stable(tmp_path: Path):
    store = SegmentStore(tmp_path / "dvr", "dvr")

    assert store.segment_name(7) == "dvr_7.ts"
    assert store.thumbnail_name(7) == "dvr_7.jpg"
    assert store.segment_path(0) == tmp_path / "dvr" / "dvr_0.ts"
    assert store.manifest_path == tmp_path / "dvr" / "dvr.m3u8"
    assert store.encoder_list_path.name == "dvr.encoder.m3u8"
    assert store.segment_pattern() == str(tmp_path / "dvr" / "dvr_%d.ts")

    assert store.parse_segment_name("dvr_42.ts") == 42
    assert store.parse_segment_name("live_42.ts") is None
    assert store.parse_segment_name("dvr_42.ts.tmp") is None
    assert store.parse_thumbnail_name("dvr_3.jpg") == 3


def test_rejects_unsafe_tags(tmp_path: Path):
    with pytest.raises(ValueError):
        SegmentStore(tmp_path, "../dvr")
    with pytest.raises(ValueError):
        SegmentStore(tmp_path, "")


def test_scan_missing_directory_creates_it(tmp_path: Path):
    store = SegmentStore(tmp_path / "live", "live")

    result = store.scan()

    assert result.segments == {}
    assert (tmp_path / "live").is_dir()


def test_scan_collects_segments_and_thumbnails(tmp_path: Path):
    store = SegmentStore(tmp_path, "live")
    store.segment_path(0).write_bytes(b"a" * 10)
    store.segment_path(3).write_bytes(b"b" * 20)
    os.utime(store.segment_path(3), (1_000.0, 1_000.0))
    store.thumbnail_path(3).write_bytes(b"jpg")
    store.thumbnail_path(9).write_bytes(b"orphan")
    (tmp_path / "live.m3u8").write_text("#EXTM3U\n")
    (tmp_path / "dvr_1.ts").write_bytes(b"other tag")
    (tmp_path / "notes.txt").write_text("ignored")

    result = store.scan()

    assert sorted(result.segments) == [0, 3]
    assert result.segments[3].size_bytes == 20
    assert result.segments[3].created_at == pytest.approx(1_000.0)
    assert result.thumbnails == {3, 9}
    assert result.errors == []


def test_delete_reports_missing_files(tmp_path: Path):
    store = SegmentStore(tmp_path, "dvr")
    path = store.segment_path(1)
    path.write_bytes(b"x")

    assert store.delete(path) is True
    assert store.delete(path) is False


def test_delete_wraps_os_errors(tmp_path: Path, monkeypatch):
    store = SegmentStore(tmp_path, "dvr")
    path = store.segment_path(1)
    path.write_bytes(b"x")

    def refuse(_path):
        raise PermissionError(13, "Permission denied", str(_path))

    monkeypatch.setattr(os, "remove", refuse)

    with pytest.raises(StoreIOError) as excinfo:
        store.delete(path)
    assert excinfo.value.op == "delete"
    assert isinstance(excinfo.value.cause, PermissionError)


def test_only_canonical_index_spellings_are_segments(tmp_path: Path):
    store = SegmentStore(tmp_path, "dvr")
    for name in ("dvr_0.ts", "dvr_10.ts", "dvr_007.ts", "dvr_00.ts", "dvr_٣.ts", "dvr_007.jpg"):
        (tmp_path / name).write_bytes(b"x")

    assert store.parse_segment_name("dvr_007.ts") is None
    assert store.parse_segment_name("dvr_٣.ts") is None
    assert store.parse_thumbnail_name("dvr_007.jpg") is None

    result = store.scan()

    assert sorted(result.segments) == [0, 10]
    assert result.thumbnails == set()
    for index in result.segments:
        assert store.segment_path(index).exists()
