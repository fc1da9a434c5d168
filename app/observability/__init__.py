from __future__ import annotations

import json
import logging
import re
from datetime import datetime, timezone
from typing import Any, Optional
from uuid import uuid4

from flask import Flask, g, request


CORRELATION_HEADER = "X-Correlation-ID"

# Incoming ids are echoed back in a response header, so only accept a
# conservative charset and length.
_CORRELATION_ID_PATTERN = re.compile(r"^[A-Za-z0-9._:-]{1,128}$")

# Extra attributes copied into every JSON line when present.
STRUCTURED_FIELDS = (
    "event",
    "correlation_id",
    "http_method",
    "http_path",
    "paste_id",
    "attempt",
    "view_count",
    "deleted",
    "purged",
    "error_type",
)


class _RequestContextFilter(logging.Filter):
    """Adds the correlation id and the HTTP method/path of the current request."""

    def filter(self, record: logging.LogRecord) -> bool:  # type: ignore[override]
        try:
            record.correlation_id = getattr(g, "correlation_id", None) or getattr(
                record, "correlation_id", None
            )
            record.http_method = request.method
            record.http_path = request.path
        except RuntimeError:
            # Outside a request (expiry worker, startup): keep what the caller passed.
            pass
        return True


class JsonFormatter(logging.Formatter):
    """One JSON object per line, with the structured paste fields flattened in."""

    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        log: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for key in STRUCTURED_FIELDS:
            value = getattr(record, key, None)
            if value is not None:
                log[key] = value

        if record.exc_info:
            log["exc_info"] = self.formatException(record.exc_info)

        return json.dumps(log, ensure_ascii=False, default=str)


def get_correlation_id() -> Optional[str]:
    """Correlation id of the current request, or ``None`` outside one."""

    try:
        return getattr(g, "correlation_id", None)
    except RuntimeError:
        return None


def _accept_correlation_id(raw: Optional[str]) -> str:
    if raw and _CORRELATION_ID_PATTERN.match(raw.strip()):
        return raw.strip()
    return uuid4().hex


def _configure_logging(level: str) -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())
    # Logger-level filters do not see records propagated from child loggers.
    handler.addFilter(_RequestContextFilter())

    root = logging.getLogger()
    root.setLevel(level.upper())
    root.handlers = [handler]


def init_observability(app: Flask) -> None:
    """
    Set up JSON logging at ``LOG_LEVEL`` and per-request correlation ids.

    A well-formed ``X-Correlation-ID`` request header is reused; otherwise a
    new id is generated. Either way it is returned on the response.
    """

    _configure_logging(app.config.get("LOG_LEVEL", "INFO"))

    @app.before_request
    def _bind_correlation_id() -> None:  # type: ignore[unused-variable]
        g.correlation_id = _accept_correlation_id(request.headers.get(CORRELATION_HEADER))

    @app.after_request
    def _return_correlation_id(response):  # type: ignore[unused-variable]
        correlation_id = get_correlation_id()
        if correlation_id:
            response.headers[CORRELATION_HEADER] = correlation_id
        return response
