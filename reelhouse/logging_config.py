from __future__ import annotations

import json
import logging
import re
from datetime import UTC, datetime

from flask import g, has_request_context, request

REQUEST_ID_HEADER = "X-Request-ID"
REQUEST_ID_RE = re.compile(r"^[A-Za-z0-9._-]{8,128}$")

# Extra attributes a record may carry (``logger.info(..., extra={"video_id": ...})``).
CONTEXT_FIELDS = ("video_id", "task_key", "upload_id")


class RequestContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if has_request_context():
            setattr(record, "request_id", getattr(g, "request_id", None))
            setattr(record, "method", request.method)
            setattr(record, "path", request.path)
        else:
            setattr(record, "request_id", None)
            setattr(record, "method", None)
            setattr(record, "path", None)
        return True


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key in ("request_id", "method", "path", *CONTEXT_FIELDS):
            value = getattr(record, key, None)
            if value:
                payload[key] = value
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, separators=(",", ":"), ensure_ascii=True)


def configure_logging(app=None, *, log_format: str = "json", log_level: str = "INFO") -> None:
    root = logging.getLogger()
    if not root.handlers:
        root.addHandler(logging.StreamHandler())
    formatter = (
        JsonFormatter()
        if log_format == "json"
        else logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
    )
    for handler in root.handlers:
        handler.setFormatter(formatter)
        if not any(isinstance(f, RequestContextFilter) for f in handler.filters):
            handler.addFilter(RequestContextFilter())
    root.setLevel(log_level)
    if app is not None:
        app.logger.handlers = root.handlers
        app.logger.setLevel(log_level)
        app.logger.propagate = False
