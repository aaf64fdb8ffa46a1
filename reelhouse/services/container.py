from __future__ import annotations

from dataclasses import dataclass

from flask import current_app

from ..config import Settings, load_settings
from ..models import get_video_engine
from ..utils.filesystem import DiskSpaceProbe
from .chunk_store import ChunkStore
from .engagement import EngagementSink
from .process_supervisor import ProcessSupervisor
from .transcoding import TranscodingPipeline
from .upload_sessions import UploadRegistry
from .uploads import UploadService
from .video_store import SqlVideoStore
from .videos import VideoService
from .worker_pool import BoundedWorkerPool, TranscodeDispatcher


@dataclass
class ServiceContainer:
    settings: Settings
    store: SqlVideoStore
    engagement: EngagementSink
    videos: VideoService
    supervisor: ProcessSupervisor
    pipeline: TranscodingPipeline
    pool: BoundedWorkerPool
    dispatcher: TranscodeDispatcher
    registry: UploadRegistry
    chunks: ChunkStore
    uploads: UploadService
    disk_probe: DiskSpaceProbe


def build_services(
    settings: Settings | None = None,
    *,
    celery_app=None,
    supervisor: ProcessSupervisor | None = None,
    dispatcher: TranscodeDispatcher | None = None,
) -> ServiceContainer:
    settings = settings or load_settings()
    store = SqlVideoStore(get_video_engine(settings.db_path))
    engagement = EngagementSink(settings.redis_url)
    videos = VideoService(store, settings, engagement)
    supervisor = supervisor or ProcessSupervisor(
        log_every=settings.subprocess_log_every,
        tail_lines=settings.subprocess_tail_lines,
    )
    pipeline = TranscodingPipeline(videos, supervisor, settings)
    pool = BoundedWorkerPool(settings.transcode_workers, settings.transcode_queue_size)
    dispatcher = dispatcher or TranscodeDispatcher(pipeline, pool, celery_app=celery_app)
    disk_probe = DiskSpaceProbe(settings.upload_dir, settings.disk_space_cache_ttl)
    registry = UploadRegistry(settings, disk_probe)
    chunks = ChunkStore(
        registry,
        max_chunk_size=settings.max_chunk_size,
        disk_probe=disk_probe,
        min_disk_free=settings.min_disk_free,
    )
    uploads = UploadService(settings, registry, chunks, videos, dispatcher)
    return ServiceContainer(
        settings=settings,
        store=store,
        engagement=engagement,
        videos=videos,
        supervisor=supervisor,
        pipeline=pipeline,
        pool=pool,
        dispatcher=dispatcher,
        registry=registry,
        chunks=chunks,
        uploads=uploads,
        disk_probe=disk_probe,
    )


def init_services(app, services: ServiceContainer | None = None) -> ServiceContainer:
    container = services or build_services(app.config.get("REELHOUSE_SETTINGS"))
    app.extensions["services"] = container
    return container


def get_services() -> ServiceContainer:
    container = current_app.extensions.get("services")
    if container is None:
        container = build_services(current_app.config.get("REELHOUSE_SETTINGS"))
        current_app.extensions["services"] = container
    return container
