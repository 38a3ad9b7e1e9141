"""Access logging for the billing API.

Every request produces one ``api.access`` record carrying a ``request``
dict (see :mod:`api.middleware.json_formatter`).  The record is tagged
with a correlation id that callers may supply through
``X-Correlation-ID``; otherwise one is generated.  The id is echoed on
the response and exposed as ``request.state.correlation_id`` so job runs
triggered over HTTP can be traced back to the call that started them.
"""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Mapping
from typing import Any

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger("api.access")

CORRELATION_HEADER = "X-Correlation-ID"

_REDACTED = "***"
_REDACTED_HEADERS = frozenset({"authorization", "cookie", "x-api-key"})


def redact_headers(headers: Mapping[str, str]) -> dict[str, str]:
    """Copy *headers*, replacing credential-bearing values."""
    return {name: _REDACTED if name.lower() in _REDACTED_HEADERS else value for name, value in headers.items()}


def _level_for(status_code: int) -> int:
    if status_code >= 500:
        return logging.ERROR
    if status_code >= 400:
        return logging.WARNING
    return logging.INFO


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Emit one structured access record per request."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        correlation_id = request.headers.get(CORRELATION_HEADER) or uuid.uuid4().hex
        request.state.correlation_id = correlation_id

        started = time.perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            response.headers[CORRELATION_HEADER] = correlation_id
            return response
        finally:
            state = request.state
            entry: dict[str, Any] = {
                "method": request.method,
                "path": request.url.path,
                "status_code": status_code,
                "duration_ms": round((time.perf_counter() - started) * 1000, 2),
                "correlation_id": correlation_id,
                "laundry_id": getattr(state, "tenant_id", None),
                "profile_id": getattr(state, "sub", None),
                "role": getattr(state, "role", None),
                "client": request.client.host if request.client else None,
                "headers": redact_headers(request.headers),
            }
            if request.url.query:
                entry["query"] = request.url.query
            logger.log(
                _level_for(status_code),
                "%s %s -> %d",
                request.method,
                request.url.path,
                status_code,
                extra={"request": entry},
            )
