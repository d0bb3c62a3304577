from __future__ import annotations

import logging
import re
import time
import uuid
from typing import Any

from opentelemetry import trace
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from opportunity_automation.context import reset_correlation_id, set_correlation_id
from opportunity_automation.metrics import observe_batch_request, observe_http_request, resolve_http_path_label


logger = logging.getLogger("opportunity_automation.request")

CORRELATION_HEADER = "x-correlation-id"
_CORRELATION_ID_RE = re.compile(r"^[A-Za-z0-9._:-]{1,128}$")


def resolve_correlation_id(raw: str | None) -> str:
    if raw and _CORRELATION_ID_RE.match(raw.strip()):
        return raw.strip()
    return str(uuid.uuid4())


def record_batch_summary(request: Request, operation: str, record_count: int, rejected_count: int) -> None:
    """Attach the outcome of an opportunity batch to the request for the access log."""
    request.state.batch_summary = {
        "operation": operation,
        "record_count": record_count,
        "rejected_count": rejected_count,
    }


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Binds the correlation id and writes one access log line per request.

    Batch endpoints leave a summary on ``request.state`` which is folded into
    the log line and the batch record counters.
    """

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        correlation_id = resolve_correlation_id(request.headers.get(CORRELATION_HEADER))
        request.state.correlation_id = correlation_id
        token = set_correlation_id(correlation_id)
        span = trace.get_current_span()
        if span is not None and span.is_recording():
            span.set_attribute("correlation_id", correlation_id)

        method = request.method
        path = resolve_http_path_label(request)
        started = time.perf_counter()
        try:
            try:
                response = await call_next(request)
            except Exception:
                duration_ms = round((time.perf_counter() - started) * 1000, 2)
                observe_http_request(method=method, path=path, status=500, duration=duration_ms / 1000)
                logger.error(
                    "http.error",
                    exc_info=True,
                    extra=self._fields(request, method, path, 500, duration_ms),
                )
                raise

            duration_ms = round((time.perf_counter() - started) * 1000, 2)
            observe_http_request(method=method, path=path, status=response.status_code, duration=duration_ms / 1000)
            summary = getattr(request.state, "batch_summary", None)
            if summary is not None:
                observe_batch_request(**summary)
            logger.info("http.request", extra=self._fields(request, method, path, response.status_code, duration_ms))
        finally:
            reset_correlation_id(token)

        response.headers[CORRELATION_HEADER] = correlation_id
        return response

    @staticmethod
    def _fields(request: Request, method: str, path: str, status_code: int, duration_ms: float) -> dict[str, Any]:
        fields: dict[str, Any] = {
            "method": method,
            "path": path,
            "status_code": status_code,
            "duration_ms": duration_ms,
        }
        fields.update(getattr(request.state, "batch_summary", None) or {})
        return fields
