"""Structured JSON logging and request correlation.

Every log line emitted while a request is being served carries its
``request_id``, so the access log, service logs (``purchase_order_imported``,
``pos_checkout_completed``...) and audit rows of one call can be joined.
"""

from __future__ import annotations

import contextvars
import json
import logging
import time
import uuid
from datetime import datetime, timezone

_current_request_id: contextvars.ContextVar[str | None] = contextvars.ContextVar("request_id", default=None)

# Keys copied from ``extra=`` onto the top level of the JSON line.
PROMOTED_FIELDS = (
    "request_id",
    "method",
    "path",
    "status_code",
    "duration_ms",
    "user_id",
    "entity",
    "entity_id",
    "code",
    "supplier_code",
    "product_count",
    "line_count",
    "row_count",
)

PROBE_PATHS = {"/healthz/", "/readyz/"}


def current_request_id() -> str | None:
    return _current_request_id.get()


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key in PROMOTED_FIELDS:
            value = getattr(record, key, None)
            if value is not None:
                payload[key] = value
        payload.setdefault("request_id", current_request_id())
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


class RequestLogMiddleware:
    """Assign a request id (or reuse ``X-Request-ID``) and write one access line per request."""

    def __init__(self, get_response):
        self.get_response = get_response
        self.logger = logging.getLogger("api.request")

    def __call__(self, request):
        request.request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
        token = _current_request_id.set(request.request_id)
        started_at = time.perf_counter()
        try:
            response = self.get_response(request)
        finally:
            _current_request_id.reset(token)

        user = getattr(request, "user", None)
        if response.status_code >= 500:
            level = logging.WARNING
        elif request.path in PROBE_PATHS:
            level = logging.DEBUG
        else:
            level = logging.INFO
        self.logger.log(
            level,
            "request_completed",
            extra={
                "request_id": request.request_id,
                "method": request.method,
                "path": request.path,
                "status_code": response.status_code,
                "duration_ms": round((time.perf_counter() - started_at) * 1000, 2),
                "user_id": str(user.pk) if user is not None and user.is_authenticated else None,
            },
        )
        response["X-Request-ID"] = request.request_id
        return response
