from __future__ import annotations

from flask import Blueprint, Response, jsonify
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from ..metrics import METRICS_ENABLED, get_metrics_registry
from ..middleware.rate_limit import limiter

metrics_bp = Blueprint("metrics", __name__)


@metrics_bp.route("/metrics")
@limiter.exempt
def metrics():
    if not METRICS_ENABLED:
        return jsonify({"error": "Metrics disabled"}), 404
    registry = get_metrics_registry()
    return Response(generate_latest(registry), mimetype=CONTENT_TYPE_LATEST)
