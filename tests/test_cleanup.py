from __future__ import annotations

import copy
import os
import time
from pathlib import Path

import pytest

from ringdvr import cleanup
from ringdvr import config as config_module
from ringdvr.coordinator import DualOutputCoordinator


def _cfg(tmp_path: Path) -> dict:
    cfg = copy.deepcopy(config_module._DEFAULTS)
    cfg["paths"]["recordings_dir"] = str(tmp_path)
    cfg["dvr"]["retention_hours"] = 1
    return cfg


def _write(root: Path, name: str, age: float, size: int = 188) -> Path:
    root.mkdir(parents=True, exist_ok=True)
    path = root / name
    path.write_bytes(b"\x47" * size)
    stamp = time.time() - age
    os.utime(path, (stamp, stamp))
    return path


@pytest.mark.parametrize(
    "size, expected",
    [(0, "0 B"), (-5, "0 B"), (512, "512.00 B"), (1536, "1.50 KB"), (3 * 1024**3, "3.00 GB")],
)
def test_format_bytes(size, expected):
    assert cleanup.format_bytes(size) == expected


def test_run_cleanup_applies_retention(tmp_path: Path, capsys):
    expired = _write(tmp_path / "dvr", "dvr_0.ts", age=2 * 3600)
    kept = _write(tmp_path / "dvr", "dvr_1.ts", age=60)
    orphan = _write(tmp_path / "dvr", "dvr_9.jpg", age=60)
    coordinator = DualOutputCoordinator.from_config(_cfg(tmp_path))
    try:
        failed = cleanup.run_cleanup(coordinator, ["dvr"])
    finally:
        coordinator.shutdown_executor()

    assert failed == 0
    assert not expired.exists()
    assert kept.exists()
    assert not orphan.exists()
    manifest = (tmp_path / "dvr" / "dvr.m3u8").read_text(encoding="utf-8")
    assert "dvr_1.ts" in manifest and "dvr_0.ts" not in manifest

    out = capsys.readouterr().out
    assert "[cleanup] dvr: 2 segment(s)" in out
    assert "evicted 1, kept 1/120" in out
    assert "removed 1 orphan thumbnail(s)" in out
    # live was not requested
    assert not (tmp_path / "live" / "live.m3u8").exists()


def test_main_sweeps_every_tag(tmp_path: Path, monkeypatch, capsys):
    _write(tmp_path / "live", "live_0.ts", age=600)
    monkeypatch.setattr(cleanup, "reload_cfg", lambda: _cfg(tmp_path))

    assert cleanup.main([]) == 0

    out = capsys.readouterr().out
    assert "[cleanup] live: evicted 1" in out
    assert "[cleanup] done" in out
    assert (tmp_path / "dvr" / "dvr.m3u8").exists()


def test_main_rejects_unknown_tags(tmp_path: Path, monkeypatch, capsys):
    monkeypatch.setattr(cleanup, "reload_cfg", lambda: _cfg(tmp_path))

    assert cleanup.main(["--tag", "audio"]) == 2
    assert "unknown tag(s): audio" in capsys.readouterr().out


def test_main_reports_invalid_config(tmp_path: Path, monkeypatch, capsys):
    cfg = _cfg(tmp_path)
    cfg["camera"]["rtsp_url"] = ""
    monkeypatch.setattr(cleanup, "reload_cfg", lambda: cfg)

    assert cleanup.main([]) == 2
    assert "invalid configuration" in capsys.readouterr().out
