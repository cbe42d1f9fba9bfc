from __future__ import annotations

import logging
import time
from typing import Any

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from app.metrics import observe_http_request, resolve_http_path_label


logger = logging.getLogger("app.request")


def _request_fields(request: Request, path: str, status_code: int, started: float) -> dict[str, Any]:
    fields: dict[str, Any] = {
        "method": request.method,
        "path": path,
        "status_code": status_code,
        "duration_ms": round((time.perf_counter() - started) * 1000, 2),
    }
    # Set by the auth dependency once the bearer token has been decoded.
    user_id = getattr(request.state, "user_id", None)
    if user_id is not None:
        fields["user_id"] = user_id
    return fields


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            fields = _request_fields(request, resolve_http_path_label(request), 500, started)
            observe_http_request(request.method, fields["path"], 500, fields["duration_ms"] / 1000)
            logger.error("http.error", exc_info=True, extra=fields)
            raise

        # Route templates are only known after routing, so the label is resolved late.
        fields = _request_fields(request, resolve_http_path_label(request), response.status_code, started)
        observe_http_request(request.method, fields["path"], response.status_code, fields["duration_ms"] / 1000)
        if response.status_code >= 500:
            logger.error("http.request", extra=fields)
        else:
            logger.info("http.request", extra=fields)
        return response
