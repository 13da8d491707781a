from __future__ import annotations

import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from app.metrics import observe_http_request, resolve_http_path_label


logger = logging.getLogger("app.request")


def _organization_id(request: Request) -> str | None:
    context = getattr(request.state, "context", None)
    return getattr(context, "organization_id", None) or request.headers.get("x-organization-id")


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        method = request.method
        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            path = resolve_http_path_label(request)
            duration = time.perf_counter() - started
            observe_http_request(method=method, path=path, status=500, duration=duration)
            logger.error(
                "http.error",
                exc_info=True,
                extra={
                    "method": method,
                    "path": path,
                    "status_code": 500,
                    "duration_ms": round(duration * 1000, 2),
                    "organization_id": _organization_id(request),
                },
            )
            raise

        # Route templates are only known after routing, so the label is resolved late.
        path = resolve_http_path_label(request)
        duration = time.perf_counter() - started
        observe_http_request(method=method, path=path, status=response.status_code, duration=duration)
        logger.info(
            "http.request",
            extra={
                "method": method,
                "path": path,
                "status_code": response.status_code,
                "duration_ms": round(duration * 1000, 2),
                "organization_id": _organization_id(request),
            },
        )
        return response
