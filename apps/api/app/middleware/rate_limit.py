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


class _TokenBucketLimiter:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._buckets: dict[tuple[str, str], _BucketState] = {}

    def take(self, principal: str, route_group: str, capacity: int, window_seconds: int) -> tuple[bool, int]:
        if capacity <= 0:
            return False, window_seconds

        now = time.monotonic()
        refill_rate = capacity / float(window_seconds)
        key = (principal, route_group)

        with self._lock:
            current = self._buckets.setdefault(key, _BucketState(tokens=float(capacity), last_refill=now))
            elapsed = max(0.0, now - current.last_refill)
            current.tokens = min(float(capacity), current.tokens + (elapsed * refill_rate))
            current.last_refill = now

            if current.tokens < 1.0:
                return False, max(1, math.ceil((1.0 - current.tokens) / refill_rate))

            current.tokens -= 1.0
            return True, 0

    def clear(self) -> None:
        with self._lock:
            self._buckets.clear()


_limiter = _TokenBucketLimiter()


class MutationRateLimitMiddleware(BaseHTTPMiddleware):
    """Token-bucket limit on mutating CRM and automation calls, per user and organization.

    Webhook test calls reach arbitrary external URLs, so they draw from their
    own smaller bucket.
    """

    mutating_methods = {"POST", "PUT", "PATCH", "DELETE"}
    limited_prefixes = ("/api/automations", "/api/crm")

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        settings = get_settings()
        if settings.rate_limit_disabled:
            return await call_next(request)

        path = request.url.path
        if not path.startswith(self.limited_prefixes) or request.method.upper() not in self.mutating_methods:
            return await call_next(request)

        if _is_webhook_test(path):
            route_group, capacity = "automations.webhook-tests", settings.rate_limit_webhook_tests_per_minute
        else:
            route_group, capacity = _resolve_route_group(path), settings.rate_limit_mutations_per_minute

        allowed, retry_after = _limiter.take(
            principal=_resolve_principal(request),
            route_group=route_group,
            capacity=capacity,
            window_seconds=WINDOW_SECONDS,
        )
        if allowed:
            return await call_next(request)
        return _rate_limited_response(request, retry_after)


def _rate_limited_response(request: Request, retry_after: int) -> JSONResponse:
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
            "details": None,
            "correlation_id": correlation_id,
        },
    )
    response.headers["Retry-After"] = str(retry_after)
    response.headers["X-Correlation-Id"] = correlation_id
    return response


def _is_webhook_test(path: str) -> bool:
    return path.startswith("/api/automations/") and path.rstrip("/").endswith("/test")


def _resolve_route_group(path: str) -> str:
    parts = [part for part in path.split("/") if part]
    if len(parts) < 3:
        return parts[1] if len(parts) > 1 else "api"
    return f"{parts[1]}.{parts[2]}"


def _resolve_principal(request: Request) -> str:
    organization = (request.headers.get("x-organization-id") or "").strip() or "-"
    return f"{_resolve_subject(request)}@{organization}"


def _resolve_subject(request: Request) -> str:
    auth_header = request.headers.get("authorization", "")
    token = auth_header.removeprefix("Bearer ") if auth_header.startswith("Bearer ") else ""
    if not token:
        return "anonymous"

    settings = get_settings()
    try:
        payload: dict[str, Any] = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return "anonymous"

    subject = payload.get("sub")
    return "anonymous" if subject is None else str(subject)


def reset_rate_limiter() -> None:
    _limiter.clear()
