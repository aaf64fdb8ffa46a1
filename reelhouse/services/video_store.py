from __future__ import annotations

import json
import logging
import threading
import time
from contextlib import contextmanager
from datetime import UTC, datetime

from sqlalchemy import delete, select, text, update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import OperationalError

from ..errors import InvalidTransition, VideoNotFound
from ..models import VideoBase
from ..models.video import Video, VideoRecord, VideoStatus
from .video_state import sources_for

logger = logging.getLogger("reelhouse.video_store")

_JSON_FIELDS = {"available_qualities": "available_qualities_json", "tags": "tags_json"}


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def _load_list(raw: str | None) -> list[str]:
    if not raw:
        return []
    try:
        data = json.loads(raw)
    except ValueError:
        return []
    return [str(item) for item in data] if isinstance(data, list) else []


def _row_to_video(row) -> Video:
    return Video(
        id=row.id,
        title=row.title,
        filename=row.filename,
        status=VideoStatus(row.status),
        description=row.description or "",
        uploader_id=row.uploader_id,
        uploader_name=row.uploader_name,
        upload_path=row.upload_path,
        hls_path=row.hls_path,
        thumbnail_path=row.thumbnail_path,
        source_path=row.source_path,
        processing_progress=int(row.processing_progress or 0),
        processing_error=row.processing_error,
        available_qualities=_load_list(row.available_qualities_json),
        file_size=row.file_size,
        duration_seconds=row.duration_seconds,
        width=row.width,
        height=row.height,
        manifest_url=row.manifest_url,
        thumbnail_url=row.thumbnail_url,
        tags=_load_list(row.tags_json),
        uploaded_at=_as_utc(row.uploaded_at),
        processed_at=_as_utc(row.processed_at),
        updated_at=_as_utc(row.updated_at),
    )


def _video_to_values(video: Video) -> dict:
    return {
        "id": video.id,
        "title": video.title,
        "description": video.description,
        "filename": video.filename,
        "uploader_id": video.uploader_id,
        "uploader_name": video.uploader_name,
        "upload_path": video.upload_path,
        "hls_path": video.hls_path,
        "thumbnail_path": video.thumbnail_path,
        "source_path": video.source_path,
        "status": video.status.value,
        "processing_progress": video.processing_progress,
        "processing_error": video.processing_error,
        "available_qualities_json": json.dumps(list(video.available_qualities)),
        "file_size": video.file_size,
        "duration_seconds": video.duration_seconds,
        "width": video.width,
        "height": video.height,
        "manifest_url": video.manifest_url,
        "thumbnail_url": video.thumbnail_url,
        "tags_json": json.dumps(list(video.tags)),
        "uploaded_at": video.uploaded_at,
        "processed_at": video.processed_at,
        "updated_at": video.updated_at,
    }


class SqlVideoStore:
    """
    Video-record store on SQLite.

    Implements save / find_by_id / update_status / delete plus ``transition``,
    an atomic compare-and-set on the status column used to enforce the
    lifecycle and to keep a second pipeline run off a video that is already
    processing.
    """

    def __init__(self, engine):
        self._engine = engine
        self._ready = False
        self._init_lock = threading.Lock()

    def _ensure_db(self) -> None:
        if self._ready:
            return
        with self._init_lock:
            if self._ready:
                return
            for attempt in range(10):
                try:
                    VideoBase.metadata.create_all(self._engine)
                    self._ready = True
                    return
                except OperationalError as exc:
                    if "locked" in str(exc).lower() and attempt < 9:
                        time.sleep(0.05 * (attempt + 1))
                        continue
                    raise

    @contextmanager
    def _conn(self):
        self._ensure_db()
        with self._engine.begin() as conn:
            yield conn

    def save(self, video: Video) -> Video:
        video.updated_at = _utcnow()
        values = _video_to_values(video)
        stmt = sqlite_insert(VideoRecord).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=["id"],
            set_={key: stmt.excluded[key] for key in values if key != "id"},
        )
        with self._conn() as conn:
            conn.execute(stmt)
        return video

    def find_by_id(self, video_id: str) -> Video | None:
        with self._conn() as conn:
            row = conn.execute(
                select(VideoRecord.__table__).where(VideoRecord.id == video_id).limit(1)
            ).first()
        return _row_to_video(row) if row else None

    def list_by_status(self, status: VideoStatus) -> list[Video]:
        with self._conn() as conn:
            rows = conn.execute(
                select(VideoRecord.__table__).where(VideoRecord.status == status.value)
            ).fetchall()
        return [_row_to_video(row) for row in rows]

    def update_status(self, video_id: str, status: VideoStatus) -> Video:
        return self.transition(video_id, status)

    def update_fields(self, video_id: str, **fields) -> None:
        if "status" in fields:
            raise ValueError("status changes go through transition()")
        values = {}
        for key, value in fields.items():
            if key in _JSON_FIELDS:
                values[_JSON_FIELDS[key]] = json.dumps(list(value or []))
            else:
                values[key] = value
        values["updated_at"] = _utcnow()
        with self._conn() as conn:
            result = conn.execute(
                update(VideoRecord).where(VideoRecord.id == video_id).values(**values)
            )
        if result.rowcount == 0:
            raise VideoNotFound(f"Video not found: {video_id}")

    def transition(
        self,
        video_id: str,
        target: VideoStatus,
        *,
        allowed_from: frozenset[VideoStatus] | None = None,
        **fields,
    ) -> Video:
        allowed = allowed_from if allowed_from is not None else sources_for(target)
        values = {key: value for key, value in fields.items() if key not in _JSON_FIELDS}
        for key, column in _JSON_FIELDS.items():
            if key in fields:
                values[column] = json.dumps(list(fields[key] or []))
        values["status"] = target.value
        values["updated_at"] = _utcnow()
        with self._conn() as conn:
            result = conn.execute(
                update(VideoRecord)
                .where(VideoRecord.id == video_id)
                .where(VideoRecord.status.in_([state.value for state in allowed]))
                .values(**values)
            )
        if result.rowcount == 0:
            current = self.find_by_id(video_id)
            if current is None:
                raise VideoNotFound(f"Video not found: {video_id}")
            raise InvalidTransition(video_id, current.status, target)
        video = self.find_by_id(video_id)
        if video is None:
            raise VideoNotFound(f"Video not found: {video_id}")
        return video

    def delete(self, video_id: str) -> bool:
        with self._conn() as conn:
            result = conn.execute(delete(VideoRecord).where(VideoRecord.id == video_id))
        return bool(result.rowcount)

    def ping(self) -> bool:
        with self._conn() as conn:
            conn.execute(text("SELECT 1"))
        return True
