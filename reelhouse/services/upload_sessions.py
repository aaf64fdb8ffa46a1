from __future__ import annotations

import logging
import os
import threading
import time
from dataclasses import dataclass, field

from ..config import Settings
from ..errors import (
    FileTooLarge,
    InsufficientStorage,
    SessionNotFound,
    StateInconsistency,
    UploadAlreadyActive,
    ValidationError,
)
from ..metrics import ACTIVE_UPLOADS
from ..utils.filesystem import DiskSpaceProbe
from ..utils.validation import new_upload_id, normalize_upload_id, validate_extension

logger = logging.getLogger("reelhouse.upload")


@dataclass
class UploadSession:
    session_id: str
    video_id: str
    original_filename: str
    extension: str
    declared_total_size: int
    declared_total_chunks: int
    temp_file_path: str
    completed: bytearray = field(default_factory=bytearray)
    chunk_offsets: list[int] = field(default_factory=list)
    bytes_written: int = 0
    finalized: bool = False
    closed: bool = False
    created_at: float = 0.0
    updated_at: float = 0.0
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def __post_init__(self):
        if not self.completed:
            self.completed = bytearray(self.declared_total_chunks)
        if not self.chunk_offsets:
            self.chunk_offsets = [0] * self.declared_total_chunks

    def completed_count(self) -> int:
        return sum(self.completed)

    def contiguous_count(self) -> int:
        """Number of leading chunks (0, 1, ...) already written."""
        for idx, done in enumerate(self.completed):
            if not done:
                return idx
        return self.declared_total_chunks

    def missing_chunks(self) -> list[int]:
        return [idx for idx, done in enumerate(self.completed) if not done]

    def is_complete(self) -> bool:
        return self.completed_count() == self.declared_total_chunks

    def progress(self) -> float:
        if self.declared_total_chunks <= 0:
            return 0.0
        return self.completed_count() / self.declared_total_chunks

    def reset(self) -> None:
        self.completed = bytearray(self.declared_total_chunks)
        self.chunk_offsets = [0] * self.declared_total_chunks
        self.bytes_written = 0

    def to_dict(self) -> dict:
        return {
            "uploadId": self.session_id,
            "videoId": self.video_id,
            "filename": self.original_filename,
            "totalSize": self.declared_total_size,
            "totalChunks": self.declared_total_chunks,
            "receivedChunks": self.completed_count(),
            "nextChunk": self.contiguous_count(),
            "bytesReceived": self.bytes_written,
            "progress": round(self.progress(), 4),
            "finalized": self.finalized,
        }


class UploadRegistry:
    """
    In-flight upload sessions, keyed by session id, with admission control.

    At most one open session exists per video id. Sessions idle for longer
    than the configured TTL read as not found and are dropped by
    ``reap_stale``.
    """

    def __init__(self, settings: Settings, disk_probe: DiskSpaceProbe | None = None, clock=time.monotonic):
        self.settings = settings
        self.disk_probe = disk_probe or DiskSpaceProbe(settings.upload_dir, settings.disk_space_cache_ttl)
        self._clock = clock
        self._lock = threading.Lock()
        self._sessions: dict[str, UploadSession] = {}
        self._by_video: dict[str, str] = {}

    def check_admission(
        self,
        filename: str,
        declared_size: int,
        declared_chunks: int,
        *,
        allowed_extensions: tuple[str, ...] | None = None,
        max_file_size: int | None = None,
        min_disk_free: int | None = None,
    ) -> str:
        allowed = allowed_extensions if allowed_extensions is not None else self.settings.allowed_extensions
        max_size = max_file_size if max_file_size is not None else self.settings.max_file_size
        reserve = min_disk_free if min_disk_free is not None else self.settings.min_disk_free

        ext = validate_extension(filename, allowed)
        if declared_size <= 0:
            raise ValidationError("File size must be positive")
        if declared_size > max_size:
            raise FileTooLarge(f"File exceeds the maximum allowed size of {max_size} bytes")
        if declared_chunks < 1 or declared_chunks > self.settings.max_chunks:
            raise ValidationError(f"totalChunks must be between 1 and {self.settings.max_chunks}")
        if declared_chunks > declared_size:
            raise ValidationError("totalChunks cannot exceed the file size")
        if declared_size > declared_chunks * self.settings.max_chunk_size:
            raise ValidationError("Too few chunks for the declared size and chunk size limit")

        free = self.disk_probe.free_bytes()
        if free < declared_size + reserve:
            logger.warning(
                "Rejecting upload of %s bytes: %s bytes free, %s reserved", declared_size, free, reserve
            )
            raise InsufficientStorage("Insufficient storage space for this upload")
        return ext

    def init_upload(
        self,
        filename: str,
        declared_size: int,
        declared_chunks: int,
        *,
        video_id: str,
        allowed_extensions: tuple[str, ...] | None = None,
        max_file_size: int | None = None,
        min_disk_free: int | None = None,
    ) -> UploadSession:
        ext = self.check_admission(
            filename,
            declared_size,
            declared_chunks,
            allowed_extensions=allowed_extensions,
            max_file_size=max_file_size,
            min_disk_free=min_disk_free,
        )
        now = self._clock()
        session = UploadSession(
            session_id=new_upload_id(),
            video_id=video_id,
            original_filename=filename,
            extension=ext,
            declared_total_size=declared_size,
            declared_total_chunks=declared_chunks,
            temp_file_path=os.path.join(self.settings.temp_dir, f"{video_id}.{ext}"),
            created_at=now,
            updated_at=now,
        )
        with self._lock:
            if video_id in self._by_video:
                raise UploadAlreadyActive(f"An upload is already active for video {video_id}")
            while session.session_id in self._sessions:
                session.session_id = new_upload_id()
            self._sessions[session.session_id] = session
            self._by_video[video_id] = session.session_id
            self._update_gauge()
        logger.info(
            "Upload session %s opened for %s (%s bytes in %s chunks)",
            session.session_id,
            filename,
            declared_size,
            declared_chunks,
            extra={"video_id": video_id, "upload_id": session.session_id},
        )
        return session

    def _is_expired(self, session: UploadSession, now: float) -> bool:
        return now - session.updated_at > self.settings.upload_session_ttl

    def get_session(self, session_id: str) -> UploadSession:
        key = normalize_upload_id(session_id)
        with self._lock:
            session = self._sessions.get(key) if key else None
        if session is None or session.closed or self._is_expired(session, self._clock()):
            raise SessionNotFound("Upload session not found or expired")
        return session

    def find(self, session_id: str) -> UploadSession | None:
        with self._lock:
            return self._sessions.get(session_id)

    def find_by_video(self, video_id: str) -> UploadSession | None:
        with self._lock:
            session_id = self._by_video.get(video_id)
            return self._sessions.get(session_id) if session_id else None

    def touch(self, session: UploadSession) -> None:
        session.updated_at = self._clock()

    def complete_session(self, session_id: str) -> str:
        session = self.get_session(session_id)
        if not session.finalized:
            raise StateInconsistency("Upload has not been finalized")
        self.remove(session_id)
        return session.video_id

    def remove(self, session_id: str) -> UploadSession | None:
        with self._lock:
            session = self._sessions.pop(session_id, None)
            if session is not None:
                session.closed = True
                if self._by_video.get(session.video_id) == session_id:
                    del self._by_video[session.video_id]
            self._update_gauge()
        return session

    def reap_stale(self, ttl_seconds: float | None = None) -> list[UploadSession]:
        """Drop sessions idle longer than ``ttl_seconds`` and return them for file cleanup."""
        ttl = self.settings.upload_session_ttl if ttl_seconds is None else ttl_seconds
        now = self._clock()
        with self._lock:
            stale = [s for s in self._sessions.values() if now - s.updated_at > ttl]
            for session in stale:
                session.closed = True
                self._sessions.pop(session.session_id, None)
                if self._by_video.get(session.video_id) == session.session_id:
                    del self._by_video[session.video_id]
            self._update_gauge()
        return stale

    def active_count(self) -> int:
        with self._lock:
            return len(self._sessions)

    def _update_gauge(self) -> None:
        if ACTIVE_UPLOADS is not None:
            ACTIVE_UPLOADS.set(len(self._sessions))
