from __future__ import annotations

import logging
import os
import shutil

from ..config import Settings
from ..services.transcoding import QUALITY_CATALOG

logger = logging.getLogger("reelhouse.config")


def validate_config(settings: Settings) -> list[str]:
    """Create storage directories and log (never raise on) questionable settings."""
    warnings: list[str] = []

    for path in (
        settings.upload_dir,
        settings.temp_dir,
        settings.hls_dir,
        settings.thumbnail_dir,
        os.path.dirname(settings.db_path),
    ):
        if path:
            os.makedirs(path, exist_ok=True)

    for name, binary in (("ffmpeg", settings.ffmpeg_bin), ("ffprobe", settings.ffprobe_bin)):
        if not shutil.which(binary):
            warnings.append(f"{name} binary not found on PATH: {binary}")

    unknown = [label for label in settings.qualities if label not in QUALITY_CATALOG]
    if unknown:
        warnings.append(f"Unknown transcode qualities ignored: {', '.join(unknown)}")

    try:
        free = shutil.disk_usage(settings.upload_dir).free
    except OSError:
        free = None
    if free is not None and free < settings.min_disk_free:
        warnings.append(
            f"Free space on {settings.upload_dir} ({free} bytes) is below "
            f"REELHOUSE_MIN_DISK_FREE ({settings.min_disk_free} bytes); uploads will be rejected"
        )

    if settings.max_chunk_size * settings.max_chunks < settings.max_file_size:
        warnings.append("REELHOUSE_MAX_CHUNK_SIZE * REELHOUSE_MAX_CHUNKS is smaller than REELHOUSE_MAX_FILE_SIZE")

    for message in warnings:
        logger.warning(message)
    return warnings
