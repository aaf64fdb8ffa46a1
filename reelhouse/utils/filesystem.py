from __future__ import annotations

import logging
import os
import shutil
import threading
import time

logger = logging.getLogger("reelhouse.filesystem")


class DiskSpaceProbe:
    """
    Free-space lookup for one volume, cached for ``ttl_seconds``.

    Admission checks run on every init and every chunk; the cache trades a
    short staleness window for not hitting ``statvfs`` per request.
    """

    def __init__(self, path: str, ttl_seconds: float = 1.0, clock=time.monotonic):
        self.path = path
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._cached_free: int | None = None
        self._checked_at = 0.0

    def free_bytes(self) -> int:
        now = self._clock()
        with self._lock:
            if self._cached_free is not None and now - self._checked_at < self.ttl_seconds:
                return self._cached_free
        free = _free_bytes(self.path)
        with self._lock:
            self._cached_free = free
            self._checked_at = now
        return free

    def invalidate(self) -> None:
        with self._lock:
            self._cached_free = None


def _free_bytes(path: str) -> int:
    probe = path
    while probe and not os.path.exists(probe):
        parent = os.path.dirname(probe)
        if parent == probe:
            break
        probe = parent
    return shutil.disk_usage(probe or "/").free


def remove_file_quietly(path: str | None) -> bool:
    if not path:
        return False
    try:
        os.remove(path)
        return True
    except FileNotFoundError:
        return False
    except OSError as exc:
        logger.warning("Failed to delete %s: %s", path, exc)
        return False


def remove_tree(path: str | None) -> None:
    if not path or not os.path.exists(path):
        return
    shutil.rmtree(path, ignore_errors=True)


def atomic_write_text(path: str, content: str) -> None:
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    tmp_path = f"{path}.tmp"
    try:
        with open(tmp_path, "w", encoding="utf-8") as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, path)
    finally:
        remove_file_quietly(tmp_path)


def move_file(src: str, dest: str) -> None:
    """Rename ``src`` onto ``dest``; across volumes copy next to ``dest`` first, then rename."""
    os.makedirs(os.path.dirname(dest) or ".", exist_ok=True)
    try:
        os.replace(src, dest)
        return
    except OSError as exc:
        logger.info("Rename %s -> %s failed (%s), copying instead", src, dest, exc)

    tmp_dest = f"{dest}.partial"
    try:
        shutil.copyfile(src, tmp_dest)
        os.replace(tmp_dest, dest)
    except OSError:
        remove_file_quietly(tmp_dest)
        raise
    remove_file_quietly(src)
