from __future__ import annotations

import os
from contextlib import contextmanager

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.celery import CeleryInstrumentor
from opentelemetry.instrumentation.flask import FlaskInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter

_tracer = trace.get_tracer("reelhouse.pipeline")


def configure_tracing(app, enabled: bool) -> None:
    if not enabled:
        return

    service_name = os.environ.get("REELHOUSE_OTEL_SERVICE_NAME", "reelhouse")
    exporter_otlp_endpoint = os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT", "")

    provider = TracerProvider(resource=Resource.create({"service.name": service_name}))
    if exporter_otlp_endpoint:
        exporter = OTLPSpanExporter(endpoint=exporter_otlp_endpoint, insecure=True)
        provider.add_span_processor(BatchSpanProcessor(exporter))
    else:
        provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))

    trace.set_tracer_provider(provider)

    if app is not None:
        FlaskInstrumentor().instrument_app(app)
    CeleryInstrumentor().instrument()


@contextmanager
def pipeline_span(name: str, video_id: str, **attributes):
    """Span around one pipeline step. A no-op span when no provider is configured."""
    with _tracer.start_as_current_span(name) as span:
        span.set_attribute("reelhouse.video_id", video_id)
        for key, value in attributes.items():
            if value is not None:
                span.set_attribute(f"reelhouse.{key}", value)
        yield span
