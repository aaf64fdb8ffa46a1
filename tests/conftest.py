import os
import sys
import tempfile

BASE_DIR = tempfile.mkdtemp(prefix="reelhouse-tests-")

os.environ["REELHOUSE_DATA_DIR"] = BASE_DIR
os.environ["REELHOUSE_MIN_DISK_FREE"] = "0"
os.environ["REELHOUSE_LOG_FORMAT"] = "plain"
os.environ["REELHOUSE_METRICS_ENABLED"] = "false"
os.environ["REELHOUSE_OTEL_ENABLED"] = "false"
os.environ["REELHOUSE_REDIS_URL"] = ""
os.environ["REELHOUSE_CELERY_BROKER_URL"] = ""
os.environ["REELHOUSE_SENTRY_DSN"] = ""

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

import dataclasses

import pytest

from reelhouse.config import load_settings
from reelhouse.models import get_video_engine
from reelhouse.services.process_supervisor import ExitResult
from reelhouse.services.video_store import SqlVideoStore
from reelhouse.services.videos import VideoService

GIB = 1024 * 1024 * 1024


class FakeDiskProbe:
    def __init__(self, free: int = 100 * GIB):
        self.free = free

    def free_bytes(self) -> int:
        return self.free

    def invalidate(self) -> None:
        pass


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class ScriptedSupervisor:
    """
    Stands in for ProcessSupervisor: answers probe/thumbnail/encode commands
    by writing the files the real tools would, with per-quality failures.
    """

    def __init__(self):
        self.calls = []
        self.cancelled_prefixes = []
        self.probe_lines = ("1920,1080,12.5",)
        self.probe_exit = 0
        self.thumbnail_ok = True
        self.fail_qualities = set()
        self.timeout_qualities = set()
        self.on_encode = None

    def run(self, command, args=(), *, env=None, timeout=None, task_key=None, cwd=None):
        args = list(args)
        self.calls.append((task_key, [command, *args]))
        if task_key.endswith("_probe"):
            return ExitResult(self.probe_exit, output_tail=tuple(self.probe_lines))
        if task_key.endswith("_thumbnail"):
            if not self.thumbnail_ok:
                return ExitResult(1, output_tail=("Output file is empty",))
            with open(args[-1], "wb") as handle:
                handle.write(b"\xff\xd8jpeg")
            return ExitResult(0)

        label = task_key.rsplit("_", 1)[1]
        quality_dir = os.path.dirname(args[-1])
        with open(os.path.join(quality_dir, "seg_000.ts"), "wb") as handle:
            handle.write(b"segment")
        if self.on_encode is not None:
            result = self.on_encode(label)
            if result is not None:
                return result
        if label in self.fail_qualities:
            return ExitResult(1, output_tail=("Error while encoding",))
        if label in self.timeout_qualities:
            return ExitResult(-9, timed_out=True, duration=timeout or 0.0)
        with open(args[-1], "w", encoding="utf-8") as handle:
            handle.write("#EXTM3U\n#EXT-X-ENDLIST\n")
        return ExitResult(0, duration=0.1)

    def encode_labels(self):
        return [key.rsplit("_", 1)[1] for key, _ in self.calls if not key.endswith(("_probe", "_thumbnail"))]

    def cancel_prefix(self, prefix):
        self.cancelled_prefixes.append(prefix)
        return 0


class RecordingDispatcher:
    def __init__(self):
        self.submitted = []
        self.capacity = True
        self.submit_error = None
        self.cancel_result = None

    def has_capacity(self):
        return self.capacity

    def submit(self, video_id, input_path):
        if self.submit_error is not None:
            raise self.submit_error
        self.submitted.append((video_id, input_path))
        return "local"

    def cancel(self, video_id):
        return self.cancel_result

    def is_active(self, video_id):
        return any(vid == video_id for vid, _ in self.submitted)

    def shutdown(self, wait=True):
        pass


@pytest.fixture()
def make_settings(tmp_path):
    base = load_settings(
        {
            "REELHOUSE_DATA_DIR": str(tmp_path / "data"),
            "REELHOUSE_MIN_DISK_FREE": "0",
            "REELHOUSE_LOG_FORMAT": "plain",
            "REELHOUSE_METRICS_ENABLED": "false",
        }
    )

    def _make(**overrides):
        settings = dataclasses.replace(base, **overrides)
        for path in (settings.upload_dir, settings.temp_dir, settings.hls_dir, settings.thumbnail_dir):
            os.makedirs(path, exist_ok=True)
        return settings

    return _make


@pytest.fixture()
def settings(make_settings):
    return make_settings()


@pytest.fixture()
def disk_probe():
    return FakeDiskProbe()


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def supervisor():
    return ScriptedSupervisor()


@pytest.fixture()
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture()
def store(settings):
    return SqlVideoStore(get_video_engine(settings.db_path))


@pytest.fixture()
def videos(store, settings):
    return VideoService(store, settings)


@pytest.fixture()
def services(settings, supervisor, dispatcher):
    from reelhouse.services.container import build_services

    return build_services(settings, supervisor=supervisor, dispatcher=dispatcher)


@pytest.fixture()
def app(services):
    from reelhouse import create_app

    application = create_app(services=services)
    application.config.update(TESTING=True)
    return application


@pytest.fixture()
def client(app):
    return app.test_client()
