from __future__ import annotations

import re
import uuid

from opentelemetry import trace
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from app.context import reset_correlation_id, set_correlation_id

CORRELATION_HEADER = "x-correlation-id"
# Accepted from upstream proxies that only forward a request id.
FALLBACK_HEADER = "x-request-id"

_MAX_LENGTH = 128
_ALLOWED = re.compile(r"^[A-Za-z0-9._:/-]+$")


def resolve_correlation_id(request: Request) -> str:
    """Incoming id when it is safe to echo into logs and headers, else a fresh uuid."""
    for header in (CORRELATION_HEADER, FALLBACK_HEADER):
        candidate = (request.headers.get(header) or "").strip()
        if candidate and len(candidate) <= _MAX_LENGTH and _ALLOWED.match(candidate):
            return candidate
    return str(uuid.uuid4())


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        correlation_id = resolve_correlation_id(request)
        request.state.correlation_id = correlation_id
        token = set_correlation_id(correlation_id)
        span = trace.get_current_span()
        if span.is_recording():
            span.set_attribute("correlation_id", correlation_id)
        try:
            response = await call_next(request)
        finally:
            reset_correlation_id(token)

        response.headers[CORRELATION_HEADER] = correlation_id
        return response
