from __future__ import annotations

import logging
import os
import threading

from celery import Celery

from .config import Settings, load_settings
from .services.container import build_services
from .services.worker_pool import TRANSCODE_TASK_NAME

logger = logging.getLogger("reelhouse.tasks")

_worker_services = None
_worker_lock = threading.Lock()


def create_celery_app(settings: Settings) -> Celery | None:
    broker = settings.celery_broker_url
    if not broker:
        return None
    backend = (os.environ.get("REELHOUSE_CELERY_RESULT_BACKEND") or "").strip() or broker
    app = Celery("reelhouse", broker=broker, backend=backend)
    app.conf.update(
        task_acks_late=True,
        task_reject_on_worker_lost=True,
        worker_prefetch_multiplier=1,
    )
    return app


def _get_worker_services():
    global _worker_services
    if _worker_services is not None:
        return _worker_services
    with _worker_lock:
        if _worker_services is None:
            _worker_services = build_services(load_settings())
    return _worker_services


def run_transcode(video_id: str, input_path: str) -> str | None:
    services = _get_worker_services()
    status = services.pipeline.transcode(video_id, input_path)
    return status.value if status is not None else None


celery_app = create_celery_app(load_settings())

if celery_app:

    @celery_app.task(name=TRANSCODE_TASK_NAME)
    def _celery_transcode(video_id: str, input_path: str) -> str | None:
        logger.info("Celery transcode received", extra={"video_id": video_id})
        return run_transcode(video_id, input_path)
