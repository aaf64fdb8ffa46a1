from __future__ import annotations

from flask import current_app
from flask_limiter import Limiter

from ..utils.request import _get_rate_limit_key

limiter = Limiter(key_func=_get_rate_limit_key, default_limits=[])


def init_rate_limiter(app) -> None:
    limiter.init_app(app)


def upload_limit() -> str:
    settings = current_app.config.get("REELHOUSE_SETTINGS")
    return getattr(settings, "rate_limit_uploads", None) or "600 per minute"
