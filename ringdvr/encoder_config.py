"""Encoder configuration and ffmpeg command-line construction.

Two output modes are supported per tag:

- ring mode (default): ffmpeg's ``segment`` muxer writes ``<tag>_<n>.ts``
  with ``-segment_wrap`` bounding the slot count and
  ``-segment_start_number`` resuming at the slot chosen by the retention
  engine. ringdvr owns deletion and the public manifest.
- encoder-deletes mode: ffmpeg's ``hls`` muxer prunes its own segments via
  ``delete_segments``; ringdvr still reconciles and rewrites the manifest
  but rarely has anything to evict.
"""

from __future__ import annotations

import shlex
from dataclasses import dataclass, field, replace
from pathlib import Path

DEFAULT_BINARY = "ffmpeg"
DEFAULT_LOG_LEVEL = "info"
RTSP_TRANSPORTS = ("tcp", "udp")


@dataclass(frozen=True)
class EncoderConfig:
    tag: str
    source_url: str
    segment_pattern: str
    scratch_list_path: Path
    segment_duration: float
    list_size: int
    transport: str = "udp"
    start_index: int = 0
    wrap: int | None = None
    encoder_deletes_segments: bool = False
    codec_args: tuple[str, ...] = field(default_factory=tuple)
    binary: str = DEFAULT_BINARY
    log_level: str = DEFAULT_LOG_LEVEL

    def with_start_index(self, index: int) -> "EncoderConfig":
        return replace(self, start_index=max(0, int(index)))


def source_input_args(source_url: str, transport: str) -> list[str]:
    """Return the input arguments for the upstream source.

    ``-rtsp_transport`` is an input option, so it has to sit ahead of the
    ``-i`` it applies to; it is only emitted for RTSP sources.
    """

    args: list[str] = []
    if source_url.lower().startswith(("rtsp://", "rtsps://")):
        if transport not in RTSP_TRANSPORTS:
            raise ValueError(f"unsupported rtsp transport: {transport!r}")
        args += ["-rtsp_transport", transport]
    args += ["-i", source_url]
    return args


def _format_seconds(value: float) -> str:
    return f"{value:g}"


def _ring_output_args(cfg: EncoderConfig) -> list[str]:
    args = [
        "-f", "segment",
        "-segment_time", _format_seconds(cfg.segment_duration),
        "-segment_format", "mpegts",
        "-segment_list", str(cfg.scratch_list_path),
        "-segment_list_type", "m3u8",
        "-segment_list_size", str(max(1, cfg.list_size)),
        "-segment_start_number", str(cfg.start_index),
        "-reset_timestamps", "1",
    ]
    if cfg.wrap:
        args += ["-segment_wrap", str(cfg.wrap)]
    args.append(cfg.segment_pattern)
    return args


def _hls_output_args(cfg: EncoderConfig) -> list[str]:
    return [
        "-f", "hls",
        "-hls_time", _format_seconds(cfg.segment_duration),
        "-hls_list_size", str(max(1, cfg.list_size)),
        "-hls_flags", "delete_segments+omit_endlist",
        "-hls_segment_type", "mpegts",
        "-start_number", str(cfg.start_index),
        "-hls_segment_filename", cfg.segment_pattern,
        str(cfg.scratch_list_path),
    ]


def build_ffmpeg_command(cfg: EncoderConfig) -> list[str]:
    if cfg.segment_duration <= 0:
        raise ValueError("segment_duration must be > 0")
    if cfg.start_index < 0:
        raise ValueError("start_index must be >= 0")
    if cfg.wrap is not None and cfg.start_index >= cfg.wrap:
        raise ValueError(f"start_index {cfg.start_index} outside ring of {cfg.wrap}")

    cmd = [
        cfg.binary,
        "-hide_banner",
        "-nostats",
        "-nostdin",
        "-loglevel", cfg.log_level,
        "-y",
    ]
    cmd += source_input_args(cfg.source_url, cfg.transport)
    cmd += list(cfg.codec_args)
    if cfg.encoder_deletes_segments:
        cmd += _hls_output_args(cfg)
    else:
        cmd += _ring_output_args(cfg)
    return cmd


def redact_command(cmd: list[str]) -> str:
    """Render ``cmd`` for logs with credentials in URLs masked."""

    out = []
    for arg in cmd:
        if "://" in arg:
            scheme, rest = arg.split("://", 1)
            authority = rest.split("/", 1)[0]
            if "@" in authority:
                creds, host = authority.rsplit("@", 1)
                if ":" in creds:
                    user = creds.split(":", 1)[0]
                    arg = f"{scheme}://{user}:***@{host}{rest[len(authority):]}"
        out.append(arg)
    return shlex.join(out)
