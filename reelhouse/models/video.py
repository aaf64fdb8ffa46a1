from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy import Column, DateTime, Index, Integer, Text

from . import VideoBase


class VideoStatus(str, enum.Enum):
    UPLOADING = "uploading"
    PROCESSING = "processing"
    READY = "ready"
    FAILED = "failed"


class VideoRecord(VideoBase):
    __tablename__ = "videos"

    id = Column(Text, primary_key=True)
    title = Column(Text, nullable=False)
    description = Column(Text)
    filename = Column(Text, nullable=False)
    uploader_id = Column(Text)
    uploader_name = Column(Text)
    upload_path = Column(Text)
    hls_path = Column(Text)
    thumbnail_path = Column(Text)
    source_path = Column(Text)
    status = Column(Text, nullable=False)
    processing_progress = Column(Integer, nullable=False, default=0)
    processing_error = Column(Text)
    available_qualities_json = Column(Text, nullable=False, default="[]")
    file_size = Column(Integer)
    duration_seconds = Column(Integer)
    width = Column(Integer)
    height = Column(Integer)
    manifest_url = Column(Text)
    thumbnail_url = Column(Text)
    tags_json = Column(Text, nullable=False, default="[]")
    uploaded_at = Column(DateTime(timezone=True))
    processed_at = Column(DateTime(timezone=True))
    updated_at = Column(DateTime(timezone=True))

    __table_args__ = (Index("idx_videos_status", "status"),)


@dataclass
class Video:
    id: str
    title: str
    filename: str
    status: VideoStatus = VideoStatus.UPLOADING
    description: str = ""
    uploader_id: str | None = None
    uploader_name: str | None = None
    upload_path: str | None = None
    hls_path: str | None = None
    thumbnail_path: str | None = None
    source_path: str | None = None
    processing_progress: int = 0
    processing_error: str | None = None
    available_qualities: list[str] = field(default_factory=list)
    file_size: int | None = None
    duration_seconds: int | None = None
    width: int | None = None
    height: int | None = None
    manifest_url: str | None = None
    thumbnail_url: str | None = None
    tags: list[str] = field(default_factory=list)
    uploaded_at: datetime | None = None
    processed_at: datetime | None = None
    updated_at: datetime | None = None

    def add_quality(self, label: str) -> None:
        if label not in self.available_qualities:
            self.available_qualities.append(label)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "filename": self.filename,
            "uploaderId": self.uploader_id,
            "uploaderName": self.uploader_name,
            "status": self.status.value,
            "processingProgress": self.processing_progress,
            "processingError": self.processing_error,
            "availableQualities": list(self.available_qualities),
            "fileSize": self.file_size,
            "durationSeconds": self.duration_seconds,
            "width": self.width,
            "height": self.height,
            "manifestUrl": self.manifest_url,
            "thumbnailUrl": self.thumbnail_url,
            "tags": list(self.tags),
            "uploadedAt": self.uploaded_at.isoformat() if self.uploaded_at else None,
            "processedAt": self.processed_at.isoformat() if self.processed_at else None,
            "updatedAt": self.updated_at.isoformat() if self.updated_at else None,
        }
