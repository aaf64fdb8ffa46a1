from __future__ import annotations

import os

from prometheus_client import REGISTRY, CollectorRegistry, Counter, Gauge, Histogram, multiprocess

from .config import parse_bool

METRICS_ENABLED = parse_bool(os.environ.get("REELHOUSE_METRICS_ENABLED", "true"))
PROMETHEUS_MULTIPROC_DIR = (os.environ.get("PROMETHEUS_MULTIPROC_DIR") or "").strip()

if METRICS_ENABLED:
    REQUEST_LATENCY = Histogram(
        "reelhouse_http_request_duration_seconds",
        "HTTP request latency",
        ["method", "endpoint"],
    )
    REQUEST_COUNT = Counter(
        "reelhouse_http_requests_total",
        "Total HTTP requests",
        ["method", "endpoint", "status"],
    )
    UPLOAD_COUNT = Counter(
        "reelhouse_uploads_total",
        "Upload lifecycle events",
        ["status"],
    )
    UPLOAD_BYTES = Counter(
        "reelhouse_upload_bytes_total",
        "Bytes written by chunk uploads",
    )
    ACTIVE_UPLOADS = Gauge(
        "reelhouse_upload_sessions_active",
        "Upload sessions currently open",
    )
    VIDEO_TRANSCODE_COUNT = Counter(
        "reelhouse_video_transcode_total",
        "Transcode outcomes",
        ["quality", "status"],
    )
    VIDEO_TRANSCODE_LATENCY = Histogram(
        "reelhouse_video_transcode_duration_seconds",
        "Whole-pipeline transcode duration",
        buckets=(5, 15, 30, 60, 120, 300, 600, 1200, 1800, 3600, 7200),
    )
    ACTIVE_TRANSCODES = Gauge(
        "reelhouse_transcodes_active",
        "Transcode pipelines currently running",
    )
    TRANSCODE_REJECTIONS = Counter(
        "reelhouse_transcode_rejections_total",
        "Transcode submissions rejected because the queue was full",
    )
    SUBPROCESS_COUNT = Counter(
        "reelhouse_subprocess_total",
        "External tool invocations",
        ["tool", "outcome"],
    )
else:
    REQUEST_LATENCY = None
    REQUEST_COUNT = None
    UPLOAD_COUNT = None
    UPLOAD_BYTES = None
    ACTIVE_UPLOADS = None
    VIDEO_TRANSCODE_COUNT = None
    VIDEO_TRANSCODE_LATENCY = None
    ACTIVE_TRANSCODES = None
    TRANSCODE_REJECTIONS = None
    SUBPROCESS_COUNT = None


def get_metrics_registry() -> CollectorRegistry:
    if PROMETHEUS_MULTIPROC_DIR:
        registry = CollectorRegistry()
        multiprocess.MultiProcessCollector(registry)
        return registry
    return REGISTRY
