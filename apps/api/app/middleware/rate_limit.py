from __future__ import annotations

import math
import threading
import time
import uuid
from dataclasses import dataclass
from typing import Any

from fastapi.responses import JSONResponse
from jose import JWTError, jwt
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from app.context import get_correlation_id
from app.core.config import get_settings


WINDOW_SECONDS = 60


@dataclass
class _BucketState:
    tokens: float
    last_refill: float


@dataclass(frozen=True)
class _Caller:
    organization_id: str
    user_id: str


class _TokenBucketLimiter:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._buckets: dict[tuple[_Caller, str], _BucketState] = {}

    def take(self, caller: _Caller, route_group: str, capacity: int, window_seconds: int) -> tuple[bool, int, int]:
        """Consume one token; returns (allowed, retry_after_seconds, remaining)."""
        if capacity <= 0:
            return False, window_seconds, 0

        now = time.monotonic()
        refill_rate = capacity / float(window_seconds)
        key = (caller, route_group)

        with self._lock:
            current = self._buckets.get(key)
            if current is None:
                current = _BucketState(tokens=float(capacity), last_refill=now)
                self._buckets[key] = current

            elapsed = max(0.0, now - current.last_refill)
            current.tokens = min(float(capacity), current.tokens + (elapsed * refill_rate))
            current.last_refill = now

            if current.tokens < 1.0:
                retry_after = max(1, math.ceil((1.0 - current.tokens) / refill_rate))
                return False, retry_after, 0

            current.tokens -= 1.0
            return True, 0, int(current.tokens)

    def clear(self) -> None:
        with self._lock:
            self._buckets.clear()


_limiter = _TokenBucketLimiter()


class CrmMutationRateLimitMiddleware(BaseHTTPMiddleware):
    """Token bucket per organization and user for writes under /api/crm."""

    mutating_methods = {"POST", "PUT", "PATCH", "DELETE"}

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        settings = get_settings()
        if settings.rate_limit_disabled:
            return await call_next(request)

        path = request.url.path
        if not path.startswith("/api/crm") or request.method.upper() not in self.mutating_methods:
            return await call_next(request)

        capacity = settings.rate_limit_crm_mutations_per_minute
        allowed, retry_after, remaining = _limiter.take(
            caller=_resolve_caller(request),
            route_group=resolve_route_group(path),
            capacity=capacity,
            window_seconds=WINDOW_SECONDS,
        )
        if allowed:
            response = await call_next(request)
            response.headers["X-RateLimit-Limit"] = str(capacity)
            response.headers["X-RateLimit-Remaining"] = str(remaining)
            return response

        correlation_id = (
            get_correlation_id()
            or getattr(request.state, "correlation_id", None)
            or request.headers.get("x-correlation-id")
            or str(uuid.uuid4())
        )
        response = JSONResponse(
            status_code=429,
            content={
                "code": "RATE_LIMITED",
                "message": "Too many requests",
                "details": {"retry_after": retry_after},
                "correlation_id": correlation_id,
            },
        )
        response.headers["Retry-After"] = str(retry_after)
        response.headers["X-RateLimit-Limit"] = str(capacity)
        response.headers["X-RateLimit-Remaining"] = "0"
        response.headers["X-Correlation-Id"] = correlation_id
        return response


def resolve_route_group(path: str) -> str:
    # /api/crm/leads/bulk and /api/crm/leads/{id}/convert get their own buckets
    parts = [part for part in path.split("/") if part]
    if len(parts) < 3:
        return "crm"
    group = parts[2]
    if group == "leads" and len(parts) >= 4:
        if parts[3] == "bulk":
            return "leads.bulk"
        if parts[-1] == "convert":
            return "leads.convert"
    return group


def _resolve_caller(request: Request) -> _Caller:
    header_org = request.headers.get("x-organization-id") or "unknown"
    auth_header = request.headers.get("authorization", "")
    token = auth_header.replace("Bearer ", "") if auth_header.startswith("Bearer ") else ""
    if not token:
        return _Caller(organization_id=header_org, user_id="anonymous")

    settings = get_settings()
    try:
        payload: dict[str, Any] = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return _Caller(organization_id=header_org, user_id="anonymous")

    subject = payload.get("sub")
    organization = payload.get("org") or payload.get("organization_id") or header_org
    return _Caller(organization_id=str(organization), user_id=str(subject) if subject is not None else "anonymous")


def reset_rate_limiter() -> None:
    _limiter.clear()
