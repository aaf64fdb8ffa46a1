from __future__ import annotations

import logging
import os
import threading
import time

from ..config import Settings
from ..errors import (
    ChunkTooLarge,
    DuplicateTask,
    FileMissing,
    FileTooLarge,
    InsufficientStorage,
    InvalidTransition,
    NotVideoOwner,
    ReelhouseError,
    SessionNotFound,
    StateInconsistency,
    TranscodeQueueFull,
    UnsupportedExtension,
    ValidationError,
)
from ..metrics import UPLOAD_COUNT
from ..models.video import Video, VideoStatus
from ..utils.filesystem import remove_file_quietly
from ..utils.validation import clean_filename, copy_stream_with_limit, validate_extension
from .chunk_store import ChunkStore
from .transcoding import CANCELLED_MESSAGE
from .upload_sessions import UploadRegistry, UploadSession
from .videos import CUSTOM_THUMBNAIL_STEM, VideoService, new_video_id
from .worker_pool import TranscodeDispatcher

logger = logging.getLogger("reelhouse.upload")

UNSCHEDULED_MESSAGE = "Transcode could not be scheduled; request a re-transcode to retry"


def _count(status: str) -> None:
    if UPLOAD_COUNT is not None:
        UPLOAD_COUNT.labels(status).inc()


class UploadService:
    """
    The upload protocol end to end: init -> chunk* -> complete, plus cancel
    and re-transcode. Completing an upload finalizes the assembled file into
    ``{upload_dir}/{video_id}/original.{ext}`` and hands it to the dispatcher.
    """

    def __init__(
        self,
        settings: Settings,
        registry: UploadRegistry,
        chunks: ChunkStore,
        videos: VideoService,
        dispatcher: TranscodeDispatcher,
        clock=time.monotonic,
    ):
        self.settings = settings
        self.registry = registry
        self.chunks = chunks
        self.videos = videos
        self.dispatcher = dispatcher
        self._clock = clock
        self._reap_lock = threading.Lock()
        self._last_reap_at = clock()

    def init_upload(
        self,
        filename: str,
        total_size: int,
        total_chunks: int,
        *,
        title: str | None = None,
        description: str = "",
        tags: list[str] | None = None,
        uploader_id: str | None = None,
        uploader_name: str | None = None,
    ) -> UploadSession:
        self.maybe_reap()
        name = clean_filename(filename)
        video_id = new_video_id()
        try:
            session = self.registry.init_upload(name, total_size, total_chunks, video_id=video_id)
        except ReelhouseError as exc:
            _count("rejected")
            logger.info("Upload of %s rejected: %s", name, exc.message)
            raise

        try:
            self.videos.create_video(
                video_id,
                title=(title or "").strip() or os.path.splitext(name)[0],
                filename=name,
                description=description,
                tags=tags,
                uploader_id=uploader_id,
                uploader_name=uploader_name,
                file_size=total_size,
            )
        except Exception:
            self.registry.remove(session.session_id)
            raise
        _count("started")
        return session

    def upload_chunk(self, session_id: str, chunk_index: int, total_chunks: int, stream) -> float:
        try:
            return self.chunks.write_chunk(session_id, chunk_index, total_chunks, stream)
        except InsufficientStorage:
            logger.error("Disk space exhausted, cancelling upload", extra={"upload_id": session_id})
            self._abandon(session_id, "failed")
            raise

    def get_session(self, session_id: str) -> UploadSession:
        return self.registry.get_session(session_id)

    def complete_upload(self, video_id: str | None = None, *, session_id: str | None = None) -> Video:
        if session_id:
            session = self.registry.get_session(session_id)
        else:
            found = self.registry.find_by_video(video_id or "")
            if found is None:
                raise SessionNotFound("No active upload for this video")
            session = self.registry.get_session(found.session_id)
        video_id = session.video_id

        if not self.dispatcher.has_capacity():
            _count("deferred")
            raise TranscodeQueueFull("Transcode queue is full, retry completing the upload later")

        final_path = os.path.join(self.videos.upload_dir_for(video_id), f"original.{session.extension}")
        self.chunks.finalize(session.session_id, final_path)
        self.videos.record_source(video_id, final_path, os.path.getsize(final_path))
        self.registry.complete_session(session.session_id)
        _count("completed")

        try:
            self.dispatcher.submit(video_id, final_path)
        except (TranscodeQueueFull, DuplicateTask):
            logger.error("Upload finalized but transcode was not scheduled", extra={"video_id": video_id})
            self.videos.mark_failed(video_id, UNSCHEDULED_MESSAGE)
            raise
        return self.videos.require_video(video_id)

    def cancel_upload(self, session_id: str) -> None:
        session = self.registry.find(session_id)
        if session is None or session.closed:
            raise SessionNotFound("Upload session not found or expired")
        if session.finalized:
            raise StateInconsistency("Upload has already been completed")
        self._abandon(session_id, "cancelled")
        logger.info("Upload cancelled", extra={"video_id": session.video_id, "upload_id": session_id})

    def _abandon(self, session_id: str, outcome: str) -> None:
        session = self.registry.find(session_id)
        if session is None:
            return
        self.chunks.cancel(session_id)
        self.registry.remove(session_id)
        self._drop_unfinished_video(session.video_id)
        _count(outcome)

    def _drop_unfinished_video(self, video_id: str) -> None:
        video = self.videos.get_video(video_id)
        if video is not None and video.status == VideoStatus.UPLOADING:
            self.videos.delete_video(video_id)

    def maybe_reap(self) -> int:
        interval = self.settings.upload_reap_interval
        now = self._clock()
        with self._reap_lock:
            if now - self._last_reap_at < interval:
                return 0
            self._last_reap_at = now
        return self.reap_stale_uploads()

    def reap_stale_uploads(self, ttl_seconds: float | None = None) -> int:
        stale = self.registry.reap_stale(ttl_seconds)
        for session in stale:
            self.chunks.discard(session)
            self._drop_unfinished_video(session.video_id)
            _count("expired")
            logger.info(
                "Reaped stale upload",
                extra={"video_id": session.video_id, "upload_id": session.session_id},
            )
        return len(stale)

    def retranscode(self, video_id: str) -> Video:
        video = self.videos.require_video(video_id)
        if video.status not in (VideoStatus.READY, VideoStatus.FAILED):
            raise InvalidTransition(video_id, video.status, VideoStatus.PROCESSING)
        if not video.source_path or not os.path.isfile(video.source_path):
            raise FileMissing("The original upload is no longer available")
        self.dispatcher.submit(video_id, video.source_path)
        logger.info("Re-transcode requested", extra={"video_id": video_id})
        return video

    def cancel_transcode(self, video_id: str) -> str:
        self.videos.require_video(video_id)
        cancelled = self.dispatcher.cancel(video_id)
        if cancelled is None:
            raise StateInconsistency("No transcode is queued or running for this video")
        if cancelled == "queued":
            try:
                self.videos.mark_failed(video_id, CANCELLED_MESSAGE)
            except InvalidTransition:
                logger.info("Queued re-transcode cancelled, status unchanged", extra={"video_id": video_id})
        return cancelled

    def delete_video(self, video_id: str) -> bool:
        self.videos.require_video(video_id)
        self.dispatcher.cancel(video_id)
        session = self.registry.find_by_video(video_id)
        if session is not None:
            self.chunks.cancel(session.session_id)
            self.registry.remove(session.session_id)
        return self.videos.delete_video(video_id)

    def upload_thumbnail(self, video_id: str, file_storage, *, uploader_id: str | None = None) -> Video:
        """
        Store a user-supplied image as ``{thumbnail_dir}/{video_id}/custom.{ext}``
        and point the record at it. Only the uploader may replace the thumbnail
        of a video that records one.
        """
        video = self.videos.require_video(video_id)
        if video.uploader_id and video.uploader_id != uploader_id:
            raise NotVideoOwner("You can only upload thumbnails for your own videos")

        content_type = (getattr(file_storage, "mimetype", None) or "").lower()
        if not content_type.startswith("image/"):
            raise UnsupportedExtension("File must be an image")
        ext = validate_extension(file_storage.filename, self.settings.thumbnail_extensions)

        thumb_dir = self.videos.thumbnail_dir_for(video_id)
        os.makedirs(thumb_dir, exist_ok=True)
        filename = f"{CUSTOM_THUMBNAIL_STEM}.{ext}"
        dst_path = os.path.join(thumb_dir, filename)
        tmp_path = os.path.join(thumb_dir, f".{filename}.tmp")
        try:
            with open(tmp_path, "wb") as handle:
                written = copy_stream_with_limit(file_storage.stream, handle, self.settings.max_thumbnail_size)
            if written == 0:
                raise ValidationError("Empty thumbnail")
            os.replace(tmp_path, dst_path)
        except ChunkTooLarge:
            raise FileTooLarge(
                f"Thumbnail exceeds the maximum allowed size of {self.settings.max_thumbnail_size} bytes"
            ) from None
        finally:
            remove_file_quietly(tmp_path)

        for name in os.listdir(thumb_dir):
            if name.startswith(f"{CUSTOM_THUMBNAIL_STEM}.") and name != filename:
                remove_file_quietly(os.path.join(thumb_dir, name))
        self.videos.set_thumbnail(video_id, filename)
        logger.info("Custom thumbnail uploaded", extra={"video_id": video_id})
        return self.videos.require_video(video_id)
