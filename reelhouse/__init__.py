from __future__ import annotations

import logging
import os
import secrets
import time

import sentry_sdk
from flask import Flask, g, has_request_context, jsonify, request
from sentry_sdk.integrations.flask import FlaskIntegration

from .config import Settings, load_flask_config, load_settings
from .errors import ReelhouseError
from .logging_config import REQUEST_ID_HEADER, REQUEST_ID_RE, configure_logging
from .metrics import METRICS_ENABLED, REQUEST_COUNT, REQUEST_LATENCY
from .middleware.rate_limit import init_rate_limiter
from .routes.health import health_bp
from .routes.metrics import metrics_bp
from .routes.uploads import uploads_bp
from .routes.videos import videos_bp
from .services.container import ServiceContainer, build_services, init_services
from .tasks import create_celery_app
from .tracing import configure_tracing
from .utils.config_validation import validate_config

logger = logging.getLogger("reelhouse.app")


def _generate_request_id(raw: str | None) -> str:
    candidate = (raw or "").strip()
    if candidate and REQUEST_ID_RE.fullmatch(candidate):
        return candidate
    return secrets.token_urlsafe(12)


def _sentry_before_send(event, _hint):
    if has_request_context():
        request_id = getattr(g, "request_id", None)
        if request_id:
            event.setdefault("tags", {})["request_id"] = request_id
    return event


def _init_sentry(settings: Settings) -> None:
    if not settings.sentry_dsn:
        return
    try:
        traces_sample_rate = float(os.environ.get("REELHOUSE_SENTRY_TRACES_SAMPLE_RATE", "0"))
    except (TypeError, ValueError):
        traces_sample_rate = 0.0
    sentry_sdk.init(
        dsn=settings.sentry_dsn,
        environment=(os.environ.get("REELHOUSE_SENTRY_ENV") or "production").strip(),
        release=(os.environ.get("REELHOUSE_RELEASE") or "").strip() or None,
        integrations=[FlaskIntegration()],
        traces_sample_rate=max(0.0, traces_sample_rate),
        send_default_pii=False,
        before_send=_sentry_before_send,
    )


def _record_request_metrics(response) -> None:
    if not METRICS_ENABLED or REQUEST_COUNT is None:
        return
    endpoint = request.endpoint or "unknown"
    method = request.method
    REQUEST_COUNT.labels(method, endpoint, str(response.status_code)).inc()
    if REQUEST_LATENCY is not None and hasattr(g, "_request_started_at"):
        REQUEST_LATENCY.labels(method, endpoint).observe(time.perf_counter() - g._request_started_at)


def create_app(settings: Settings | None = None, services: ServiceContainer | None = None) -> Flask:
    settings = settings or (services.settings if services is not None else load_settings())
    validate_config(settings)

    app = Flask(__name__)
    for key, value in load_flask_config(settings).items():
        app.config.setdefault(key, value)
    app.config["MAX_CONTENT_LENGTH"] = settings.max_chunk_size + 1024 * 1024

    configure_logging(app, log_format=settings.log_format, log_level=settings.log_level)
    _init_sentry(settings)
    configure_tracing(app, settings.otel_enabled)
    init_rate_limiter(app)

    if services is None:
        services = build_services(settings, celery_app=create_celery_app(settings))
    init_services(app, services)

    @app.before_request
    def _init_request_context():
        g.request_id = _generate_request_id(request.headers.get(REQUEST_ID_HEADER))
        g._request_started_at = time.perf_counter()

    @app.after_request
    def _finalize_request(response):
        if hasattr(g, "request_id"):
            response.headers[REQUEST_ID_HEADER] = g.request_id
        _record_request_metrics(response)
        return response

    @app.errorhandler(ReelhouseError)
    def _handle_reelhouse_error(exc: ReelhouseError):
        if exc.status_code >= 500:
            logger.warning("%s: %s", exc.code, exc.message)
        return jsonify(exc.to_dict()), exc.status_code

    app.register_blueprint(health_bp)
    app.register_blueprint(metrics_bp)
    app.register_blueprint(uploads_bp)
    app.register_blueprint(videos_bp)

    logger.info("reelhouse started (data dir %s)", settings.data_dir)
    return app
