from __future__ import annotations

import logging
import os
import uuid
from datetime import UTC, datetime

from ..config import Settings
from ..errors import VideoNotFound
from ..models.video import Video, VideoStatus
from ..utils.filesystem import remove_tree
from .engagement import EngagementSink
from .video_store import SqlVideoStore

logger = logging.getLogger("reelhouse.videos")

MAX_ERROR_LENGTH = 2000
DEFAULT_THUMBNAIL_NAME = "default.jpg"
CUSTOM_THUMBNAIL_STEM = "custom"


def new_video_id() -> str:
    return uuid.uuid4().hex


def truncate_error(message: str | None) -> str:
    err = (message or "").strip() or "Unknown error"
    if len(err) > MAX_ERROR_LENGTH:
        err = err[:MAX_ERROR_LENGTH]
    return err


class VideoService:
    """Video-record operations the upload path and the pipeline need, on top of the store."""

    def __init__(self, store: SqlVideoStore, settings: Settings, engagement: EngagementSink | None = None):
        self.store = store
        self.settings = settings
        self.engagement = engagement or EngagementSink()

    def upload_dir_for(self, video_id: str) -> str:
        return os.path.join(self.settings.upload_dir, video_id)

    def hls_dir_for(self, video_id: str) -> str:
        return os.path.join(self.settings.hls_dir, video_id)

    def thumbnail_dir_for(self, video_id: str) -> str:
        return os.path.join(self.settings.thumbnail_dir, video_id)

    def manifest_url_for(self, video_id: str) -> str:
        return f"{self.settings.hls_url_prefix}/{video_id}/master.m3u8"

    def thumbnail_url_for(self, video_id: str, filename: str = DEFAULT_THUMBNAIL_NAME) -> str:
        return f"{self.settings.thumbnail_url_prefix}/{video_id}/{filename}"

    def create_video(
        self,
        video_id: str,
        *,
        title: str,
        filename: str,
        description: str = "",
        tags: list[str] | None = None,
        uploader_id: str | None = None,
        uploader_name: str | None = None,
        file_size: int | None = None,
    ) -> Video:
        video = Video(
            id=video_id,
            title=title,
            filename=filename,
            description=description or "",
            tags=list(tags or []),
            uploader_id=uploader_id,
            uploader_name=uploader_name,
            upload_path=self.upload_dir_for(video_id),
            hls_path=self.hls_dir_for(video_id),
            thumbnail_path=self.thumbnail_dir_for(video_id),
            file_size=file_size,
            status=VideoStatus.UPLOADING,
            uploaded_at=datetime.now(UTC),
        )
        self.store.save(video)
        self.engagement.init(video_id)
        logger.info("Video record created", extra={"video_id": video_id})
        return video

    def get_video(self, video_id: str) -> Video | None:
        return self.store.find_by_id(video_id)

    def require_video(self, video_id: str) -> Video:
        video = self.store.find_by_id(video_id)
        if video is None:
            raise VideoNotFound(f"Video not found: {video_id}")
        return video

    def to_dict(self, video: Video) -> dict:
        payload = video.to_dict()
        payload["engagement"] = self.engagement.get(video.id)
        return payload

    def mark_processing(self, video_id: str, allowed_from: frozenset[VideoStatus] | None = None) -> Video:
        return self.store.transition(
            video_id,
            VideoStatus.PROCESSING,
            allowed_from=allowed_from,
            processing_progress=0,
            processing_error=None,
            available_qualities=[],
            manifest_url=None,
            processed_at=None,
        )

    def update_metadata(
        self,
        video_id: str,
        *,
        width: int,
        height: int,
        duration_seconds: int,
        file_size: int | None = None,
    ) -> None:
        fields = {"width": width, "height": height, "duration_seconds": duration_seconds}
        if file_size is not None:
            fields["file_size"] = file_size
        self.store.update_fields(video_id, **fields)

    def set_thumbnail(self, video_id: str, filename: str = DEFAULT_THUMBNAIL_NAME) -> str:
        """Point the record at a thumbnail file. A generated frame never replaces a custom one."""
        url = self.thumbnail_url_for(video_id, filename)
        if filename == DEFAULT_THUMBNAIL_NAME:
            video = self.require_video(video_id)
            if video.thumbnail_url and f"/{CUSTOM_THUMBNAIL_STEM}." in video.thumbnail_url:
                return video.thumbnail_url
        self.store.update_fields(video_id, thumbnail_url=url)
        return url

    def add_quality(self, video_id: str, label: str) -> list[str]:
        video = self.require_video(video_id)
        video.add_quality(label)
        self.store.update_fields(video_id, available_qualities=video.available_qualities)
        return video.available_qualities

    def set_progress(self, video_id: str, percent: int) -> None:
        self.store.update_fields(video_id, processing_progress=max(0, min(100, int(percent))))

    def record_source(self, video_id: str, path: str, size: int | None) -> None:
        self.store.update_fields(video_id, source_path=path, file_size=size)

    def clear_source(self, video_id: str) -> None:
        self.store.update_fields(video_id, source_path=None)

    def mark_ready(self, video_id: str) -> Video:
        return self.store.transition(
            video_id,
            VideoStatus.READY,
            processing_progress=100,
            processing_error=None,
            manifest_url=self.manifest_url_for(video_id),
            processed_at=datetime.now(UTC),
        )

    def mark_failed(self, video_id: str, message: str, *, clear_qualities: bool = False) -> Video:
        fields = {"processing_error": truncate_error(message)}
        if clear_qualities:
            fields["available_qualities"] = []
        return self.store.transition(video_id, VideoStatus.FAILED, **fields)

    def delete_video(self, video_id: str) -> bool:
        video = self.store.find_by_id(video_id)
        if video is None:
            return False
        self.store.delete(video_id)
        for path in (
            video.upload_path or self.upload_dir_for(video_id),
            video.hls_path or self.hls_dir_for(video_id),
            video.thumbnail_path or self.thumbnail_dir_for(video_id),
        ):
            remove_tree(path)
        self.engagement.delete(video_id)
        logger.info("Video deleted", extra={"video_id": video_id})
        return True
