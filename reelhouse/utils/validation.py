from __future__ import annotations

import ipaddress
import os
import re
import secrets

from ..errors import ChunkTooLarge, InvalidChunkIndex, UnsupportedExtension, ValidationError

UPLOAD_ID_RE = re.compile(r"^[A-Za-z0-9_-]{8,64}$")
VIDEO_ID_RE = re.compile(r"^[0-9a-f]{32}$")

INVALID_FILENAME_CHARS_RE = re.compile(r"[\x00-\x1f\x7f/\\]")

COPY_BUFFER_SIZE = 8 * 1024


def _normalize_ip(value: str | None) -> str | None:
    if not value:
        return None

    value = (value.split(",")[0] if "," in value else value).strip()

    if value.startswith("[") and "]" in value:
        value = value[1 : value.index("]")]
    elif re.fullmatch(r"\d+\.\d+\.\d+\.\d+:\d+", value):
        value = value.split(":")[0]

    try:
        return str(ipaddress.ip_address(value))
    except ValueError:
        return None


def extract_extension(filename: str | None) -> str | None:
    base = os.path.basename((filename or "").replace("\\", "/"))
    if not base:
        return None
    ext = os.path.splitext(base)[1].lstrip(".").lower()
    return ext or None


def validate_extension(filename: str | None, allowed: tuple[str, ...] | set[str]) -> str:
    ext = extract_extension(filename)
    if not ext:
        raise UnsupportedExtension("Missing file extension")
    if ext not in {item.lower() for item in allowed}:
        raise UnsupportedExtension(f"Unsupported file type: .{ext}")
    return ext


def clean_filename(filename: str | None) -> str:
    """Basename only, control characters and separators stripped."""
    base = os.path.basename(str(filename or "").replace("\\", "/")).strip()
    base = INVALID_FILENAME_CHARS_RE.sub("", base)
    if base in {"", ".", ".."}:
        raise ValidationError("Missing filename")
    return base[:255]


def new_upload_id() -> str:
    return secrets.token_urlsafe(12)


def normalize_upload_id(value: str | None) -> str | None:
    if not value:
        return None
    raw = str(value).strip()
    if not raw or not UPLOAD_ID_RE.fullmatch(raw):
        return None
    return raw


def is_valid_video_id(value: str | None) -> bool:
    return bool(value) and bool(VIDEO_ID_RE.fullmatch(str(value)))


def parse_int_arg(value, name: str, minimum: int | None = None) -> int:
    try:
        parsed = int(str(value).strip())
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid {name}") from None
    if minimum is not None and parsed < minimum:
        raise ValidationError(f"Invalid {name}")
    return parsed


def validate_chunk_index(index: int, total_chunks: int) -> None:
    if total_chunks <= 0 or index < 0 or index >= total_chunks:
        raise InvalidChunkIndex(f"Chunk index {index} outside [0, {total_chunks})")


def copy_stream_with_limit(src, dst, max_bytes: int | None, buffer_size: int = COPY_BUFFER_SIZE) -> int:
    """Copy ``src`` to ``dst`` in bounded reads; raises ``ChunkTooLarge`` once ``max_bytes`` is passed."""
    total = 0
    while True:
        data = src.read(buffer_size)
        if not data:
            break
        total += len(data)
        if max_bytes and total > max_bytes:
            raise ChunkTooLarge(f"Chunk exceeds the maximum allowed size of {max_bytes} bytes")
        dst.write(data)
    return total
