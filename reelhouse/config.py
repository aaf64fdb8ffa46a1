from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass
from typing import Any, Mapping

logger = logging.getLogger("reelhouse.config")

ENV_PREFIX = "REELHOUSE_"

GIB = 1024 * 1024 * 1024
MIB = 1024 * 1024

DEFAULT_ALLOWED_EXTENSIONS = ("mp4", "mov", "avi", "mkv", "webm", "m4v", "flv", "wmv")
DEFAULT_THUMBNAIL_EXTENSIONS = ("jpg", "jpeg", "png", "webp")
DEFAULT_QUALITIES = ("480p", "720p", "1080p")
KNOWN_QUALITIES = ("480p", "720p", "1080p", "1440p", "2160p")


def parse_bool(value) -> bool:
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "t", "yes", "y", "on"}


def _parse_int(raw: str | None, default: int, minimum: int | None = None) -> int:
    if raw is None or not str(raw).strip():
        return default
    try:
        value = int(str(raw).strip())
    except (TypeError, ValueError):
        logger.warning("Ignoring invalid integer setting %r, using %s", raw, default)
        return default
    if minimum is not None and value < minimum:
        return minimum
    return value


def _parse_float(raw: str | None, default: float, minimum: float | None = None) -> float:
    if raw is None or not str(raw).strip():
        return default
    try:
        value = float(str(raw).strip())
    except (TypeError, ValueError):
        logger.warning("Ignoring invalid float setting %r, using %s", raw, default)
        return default
    if minimum is not None and value < minimum:
        return minimum
    return value


def _parse_list(raw: str | None, default: tuple[str, ...]) -> tuple[str, ...]:
    if raw is None or not str(raw).strip():
        return default
    items = []
    seen = set()
    for part in re.split(r"[,\s]+", str(raw)):
        item = part.strip().lstrip(".").lower()
        if not item or item in seen:
            continue
        seen.add(item)
        items.append(item)
    return tuple(items) or default


def _parse_qualities(raw: str | None) -> tuple[str, ...]:
    labels = _parse_list(raw, DEFAULT_QUALITIES)
    unknown = [label for label in labels if label not in KNOWN_QUALITIES]
    if unknown:
        logger.warning("Ignoring unknown transcode qualities: %s", ", ".join(unknown))
    return tuple(label for label in labels if label in KNOWN_QUALITIES) or DEFAULT_QUALITIES


@dataclass(frozen=True)
class Settings:
    data_dir: str
    upload_dir: str
    temp_dir: str
    hls_dir: str
    thumbnail_dir: str
    db_path: str

    max_file_size: int = 10 * GIB
    min_disk_free: int = 1 * GIB
    allowed_extensions: tuple[str, ...] = DEFAULT_ALLOWED_EXTENSIONS
    max_chunk_size: int = 10 * MIB
    max_chunks: int = 10_000
    disk_space_cache_ttl: float = 1.0
    upload_session_ttl: float = 24 * 3600.0
    upload_reap_interval: float = 300.0

    qualities: tuple[str, ...] = DEFAULT_QUALITIES
    segment_seconds: int = 6
    ffmpeg_bin: str = "ffmpeg"
    ffprobe_bin: str = "ffprobe"
    h264_preset: str = "fast"
    crf: int = 23
    audio_bitrate: str = "128k"
    thumbnail_offset_seconds: int = 5
    thumbnail_width: int = 640
    thumbnail_timeout: float = 30.0
    max_thumbnail_size: int = 5 * MIB
    thumbnail_extensions: tuple[str, ...] = DEFAULT_THUMBNAIL_EXTENSIONS
    probe_timeout: float = 30.0
    encode_timeout: float = 3600.0
    subprocess_log_every: int = 50
    subprocess_tail_lines: int = 20

    transcode_workers: int = 2
    transcode_queue_size: int = 10

    hls_url_prefix: str = "/hls"
    thumbnail_url_prefix: str = "/thumbnails"

    log_format: str = "json"
    log_level: str = "INFO"
    metrics_enabled: bool = True
    otel_enabled: bool = False
    sentry_dsn: str = ""
    redis_url: str = ""
    celery_broker_url: str = ""
    rate_limit_uploads: str = "600 per minute"


def load_settings(environ: Mapping[str, str] | None = None) -> Settings:
    env = os.environ if environ is None else environ

    def get(name: str, default: str | None = None) -> str | None:
        value = env.get(ENV_PREFIX + name)
        if value is None:
            return default
        return value.strip()

    data_dir = get("DATA_DIR") or "/var/lib/reelhouse"

    return Settings(
        data_dir=data_dir,
        upload_dir=get("UPLOAD_DIR") or os.path.join(data_dir, "uploads"),
        temp_dir=get("TEMP_DIR") or os.path.join(data_dir, "tmp"),
        hls_dir=get("HLS_DIR") or os.path.join(data_dir, "hls"),
        thumbnail_dir=get("THUMBNAIL_DIR") or os.path.join(data_dir, "thumbnails"),
        db_path=get("DB_PATH") or os.path.join(data_dir, "reelhouse.sqlite3"),
        max_file_size=_parse_int(get("MAX_FILE_SIZE"), 10 * GIB, minimum=1),
        min_disk_free=_parse_int(get("MIN_DISK_FREE"), 1 * GIB, minimum=0),
        allowed_extensions=_parse_list(get("ALLOWED_EXTENSIONS"), DEFAULT_ALLOWED_EXTENSIONS),
        max_chunk_size=_parse_int(get("MAX_CHUNK_SIZE"), 10 * MIB, minimum=1),
        max_chunks=_parse_int(get("MAX_CHUNKS"), 10_000, minimum=1),
        disk_space_cache_ttl=_parse_float(get("DISK_SPACE_CACHE_TTL_SECONDS"), 1.0, minimum=0.0),
        upload_session_ttl=_parse_float(get("UPLOAD_SESSION_TTL_SECONDS"), 24 * 3600.0, minimum=1.0),
        upload_reap_interval=_parse_float(get("UPLOAD_REAP_INTERVAL_SECONDS"), 300.0, minimum=0.0),
        qualities=_parse_qualities(get("TRANSCODE_QUALITIES")),
        segment_seconds=_parse_int(get("SEGMENT_SECONDS"), 6, minimum=1),
        ffmpeg_bin=get("FFMPEG_BIN") or "ffmpeg",
        ffprobe_bin=get("FFPROBE_BIN") or "ffprobe",
        h264_preset=get("H264_PRESET") or "fast",
        crf=_parse_int(get("CRF"), 23, minimum=0),
        audio_bitrate=get("AUDIO_BITRATE") or "128k",
        thumbnail_offset_seconds=_parse_int(get("THUMBNAIL_OFFSET_SECONDS"), 5, minimum=0),
        thumbnail_width=_parse_int(get("THUMBNAIL_WIDTH"), 640, minimum=16),
        thumbnail_timeout=_parse_float(get("THUMBNAIL_TIMEOUT_SECONDS"), 30.0, minimum=1.0),
        max_thumbnail_size=_parse_int(get("MAX_THUMBNAIL_SIZE"), 5 * MIB, minimum=1),
        thumbnail_extensions=_parse_list(get("THUMBNAIL_EXTENSIONS"), DEFAULT_THUMBNAIL_EXTENSIONS),
        probe_timeout=_parse_float(get("PROBE_TIMEOUT_SECONDS"), 30.0, minimum=1.0),
        encode_timeout=_parse_float(get("ENCODE_TIMEOUT_SECONDS"), 3600.0, minimum=1.0),
        subprocess_log_every=_parse_int(get("SUBPROCESS_LOG_EVERY"), 50, minimum=1),
        subprocess_tail_lines=_parse_int(get("SUBPROCESS_TAIL_LINES"), 20, minimum=1),
        transcode_workers=_parse_int(get("TRANSCODE_WORKERS"), 2, minimum=1),
        transcode_queue_size=_parse_int(get("TRANSCODE_QUEUE_SIZE"), 10, minimum=0),
        hls_url_prefix=(get("HLS_URL_PREFIX") or "/hls").rstrip("/"),
        thumbnail_url_prefix=(get("THUMBNAIL_URL_PREFIX") or "/thumbnails").rstrip("/"),
        log_format=(get("LOG_FORMAT") or "json").lower(),
        log_level=(get("LOG_LEVEL") or "INFO").upper(),
        metrics_enabled=parse_bool(get("METRICS_ENABLED", "true")),
        otel_enabled=parse_bool(get("OTEL_ENABLED", "false")),
        sentry_dsn=get("SENTRY_DSN") or "",
        redis_url=get("REDIS_URL") or "",
        celery_broker_url=get("CELERY_BROKER_URL") or "",
        rate_limit_uploads=get("RATE_LIMIT_UPLOADS") or "600 per minute",
    )


def load_flask_config(settings: Settings) -> dict[str, Any]:
    return {
        "RATELIMIT_STORAGE_URI": settings.redis_url or "memory://",
        "REELHOUSE_SETTINGS": settings,
    }
