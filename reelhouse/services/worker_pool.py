from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor

from ..errors import DuplicateTask, TranscodeQueueFull
from ..metrics import TRANSCODE_REJECTIONS

logger = logging.getLogger("reelhouse.worker")


class BoundedWorkerPool:
    """
    Thread pool with a fixed admission bound of ``workers + queue_size``.

    ``submit`` never blocks: when every slot is taken it raises
    ``TranscodeQueueFull``. Task ids are unique while a task is queued or
    running.
    """

    def __init__(self, workers: int = 2, queue_size: int = 10, name: str = "transcode"):
        self.workers = max(1, int(workers))
        self.queue_size = max(0, int(queue_size))
        self.name = name
        self._executor = ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix=f"reelhouse-{name}")
        self._lock = threading.RLock()
        self._tasks: dict[str, Future] = {}
        self._running: set[str] = set()
        self._closed = False

    @property
    def capacity(self) -> int:
        return self.workers + self.queue_size

    def has_capacity(self) -> bool:
        with self._lock:
            return not self._closed and len(self._tasks) < self.capacity

    def submit(self, task_id: str, fn, *args, **kwargs) -> Future:
        with self._lock:
            if self._closed:
                raise TranscodeQueueFull("Worker pool is shutting down")
            if task_id in self._tasks:
                raise DuplicateTask(f"Task {task_id} is already queued or running")
            if len(self._tasks) >= self.capacity:
                if TRANSCODE_REJECTIONS is not None:
                    TRANSCODE_REJECTIONS.inc()
                logger.warning("Rejecting %s: %s pool is full (%s)", task_id, self.name, self.capacity)
                raise TranscodeQueueFull("Transcode queue is full, try again later")
            future = self._executor.submit(self._run, task_id, fn, args, kwargs)
            self._tasks[task_id] = future
            future.add_done_callback(lambda _f, key=task_id: self._release(key))
        logger.debug("Queued %s (%s in flight)", task_id, len(self._tasks))
        return future

    def _run(self, task_id: str, fn, args, kwargs):
        with self._lock:
            self._running.add(task_id)
        try:
            return fn(*args, **kwargs)
        except Exception as exc:
            logger.warning("background task %s failed: %s", task_id, exc, exc_info=True)
            return None
        finally:
            with self._lock:
                self._running.discard(task_id)

    def _release(self, task_id: str) -> None:
        with self._lock:
            self._tasks.pop(task_id, None)

    def cancel(self, task_id: str) -> bool:
        """Cancel a task that has not started yet."""
        with self._lock:
            future = self._tasks.get(task_id)
        return bool(future and future.cancel())

    def is_queued(self, task_id: str) -> bool:
        with self._lock:
            return task_id in self._tasks and task_id not in self._running

    def is_active(self, task_id: str) -> bool:
        with self._lock:
            return task_id in self._tasks

    def stats(self) -> dict:
        with self._lock:
            return {
                "workers": self.workers,
                "queueSize": self.queue_size,
                "running": len(self._running),
                "queued": len(self._tasks) - len(self._running),
                "closed": self._closed,
            }

    def shutdown(self, wait: bool = True, cancel_pending: bool = False) -> None:
        with self._lock:
            self._closed = True
        self._executor.shutdown(wait=wait, cancel_futures=cancel_pending)


TRANSCODE_TASK_NAME = "reelhouse.transcode"


def transcode_task_id(video_id: str) -> str:
    return f"transcode:{video_id}"


class TranscodeDispatcher:
    """
    Hands a finalized upload to the pipeline: through Celery when a broker is
    configured, otherwise (or when enqueueing fails) on the local bounded pool.
    """

    def __init__(self, pipeline, pool: BoundedWorkerPool, celery_app=None):
        self.pipeline = pipeline
        self.pool = pool
        self.celery_app = celery_app

    def has_capacity(self) -> bool:
        if self.celery_app is not None:
            return True
        return self.pool.has_capacity()

    def submit(self, video_id: str, input_path: str) -> str:
        task_id = transcode_task_id(video_id)
        if self.celery_app is not None:
            try:
                self.celery_app.send_task(TRANSCODE_TASK_NAME, args=[video_id, input_path], task_id=task_id)
                logger.info("Transcode queued on celery", extra={"video_id": video_id})
                return "celery"
            except Exception as exc:
                logger.warning("Celery enqueue failed for %s: %s", task_id, exc)
        self.pool.submit(task_id, self.pipeline.transcode, video_id, input_path)
        logger.info("Transcode queued locally", extra={"video_id": video_id})
        return "local"

    def cancel(self, video_id: str) -> str | None:
        """Returns ``"queued"`` or ``"running"`` for what was cancelled, None if nothing was."""
        if self.pool.cancel(transcode_task_id(video_id)):
            return "queued"
        if self.pipeline.cancel(video_id):
            return "running"
        return None

    def is_active(self, video_id: str) -> bool:
        return self.pool.is_active(transcode_task_id(video_id)) or self.pipeline.is_running(video_id)

    def shutdown(self, wait: bool = True) -> None:
        self.pool.shutdown(wait=wait)
