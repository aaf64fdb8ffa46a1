from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Iterable

logger = logging.getLogger("reelhouse.probe")

DEFAULT_WIDTH = 1920
DEFAULT_HEIGHT = 1080


@dataclass(frozen=True)
class ProbeResult:
    width: int
    height: int
    duration_seconds: float
    probed: bool = True

    @property
    def duration_whole_seconds(self) -> int:
        return int(self.duration_seconds)


DEFAULT_PROBE = ProbeResult(DEFAULT_WIDTH, DEFAULT_HEIGHT, 0.0, probed=False)


def ffprobe_cmd(ffprobe_bin: str, src_path: str) -> list[str]:
    return [
        ffprobe_bin,
        "-v",
        "error",
        "-select_streams",
        "v:0",
        "-show_entries",
        "stream=width,height,duration",
        "-of",
        "csv=p=0",
        src_path,
    ]


def _parse_number(value: str) -> float | None:
    value = value.strip()
    if not value or value.upper() == "N/A":
        return None
    try:
        number = float(value)
    except ValueError:
        return None
    # nan, inf and overflowing exponents
    if not math.isfinite(number):
        return None
    return number


def parse_probe_output(lines: Iterable[str]) -> ProbeResult | None:
    """
    Parse ``width,height[,duration]`` from ffprobe csv output.

    Returns None when no line carries a usable width and height. A missing,
    ``N/A`` or non-finite duration reads as 0.
    """
    for line in lines:
        parts = line.strip().split(",")
        if len(parts) < 2:
            continue
        width = _parse_number(parts[0])
        height = _parse_number(parts[1])
        if not width or not height or width <= 0 or height <= 0:
            continue
        duration = _parse_number(parts[2]) if len(parts) > 2 else None
        return ProbeResult(
            width=int(width),
            height=int(height),
            duration_seconds=max(0.0, duration or 0.0),
        )
    return None


def ffmpeg_thumbnail_cmd(
    ffmpeg_bin: str,
    *,
    src_path: str,
    dst_path: str,
    seek_seconds: int | None,
    width: int,
) -> list[str]:
    cmd = [ffmpeg_bin, "-hide_banner", "-nostdin", "-nostats", "-loglevel", "error", "-y"]
    if seek_seconds:
        cmd += ["-ss", str(seek_seconds)]
    cmd += [
        "-i",
        src_path,
        "-vframes",
        "1",
        "-vf",
        f"scale={width}:-2",
        "-q:v",
        "3",
        "-f",
        "image2",
        "-update",
        "1",
        dst_path,
    ]
    return cmd
