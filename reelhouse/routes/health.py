import os
import shutil

from flask import Blueprint, jsonify

from ..services.container import get_services

health_bp = Blueprint("health", __name__)

VERSION = os.environ.get("REELHOUSE_VERSION", "0.1.0-dev")


@health_bp.route("/health")
def health_check():
    status = {"status": "healthy", "services": {}}
    overall_healthy = True
    services = get_services()

    try:
        services.store.ping()
        status["services"]["database"] = "ok"
    except Exception as exc:
        status["services"]["database"] = f"error: {exc}"
        overall_healthy = False

    try:
        free = shutil.disk_usage(services.settings.upload_dir).free
        if free < services.settings.min_disk_free:
            status["services"]["disk"] = f"low: {free} bytes free"
            overall_healthy = False
        else:
            status["services"]["disk"] = "ok"
    except OSError as exc:
        status["services"]["disk"] = f"error: {exc}"
        overall_healthy = False

    if services.engagement.uses_redis:
        if services.engagement.ping():
            status["services"]["redis"] = "ok"
        else:
            status["services"]["redis"] = "disconnected"
            overall_healthy = False
    else:
        status["services"]["redis"] = "disabled"

    status["services"]["transcode_pool"] = services.pool.stats()
    status["services"]["upload_sessions"] = services.registry.active_count()

    if not overall_healthy:
        status["status"] = "unhealthy"
        return jsonify(status), 503

    return jsonify(status)


@health_bp.route("/version")
def version():
    return jsonify(
        {
            "version": VERSION,
            "release": os.environ.get("REELHOUSE_RELEASE", "none"),
            "environment": os.environ.get("REELHOUSE_ENV", "production"),
        }
    )
