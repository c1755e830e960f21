"""Request tracing and rate limiting for the node API."""

from __future__ import annotations

import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field

import structlog
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse, Response

from ember_node.api.metrics import REQUEST_COUNT, REQUEST_LATENCY

log = structlog.get_logger()

_UNTRACKED_PATHS = ("/health", "/metrics")

_SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Cache-Control": "no-store",
}


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Bind a request ID to structlog contextvars and log each request.

    The ID comes from ``X-Request-ID`` when a peer sends one (share delivery
    forwards the leader's), otherwise a fresh UUID4 hex.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("x-request-id") or uuid.uuid4().hex
        structlog.contextvars.bind_contextvars(request_id=request_id)
        start = time.monotonic()
        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id
            for header, value in _SECURITY_HEADERS.items():
                response.headers.setdefault(header, value)
            path = request.url.path
            if path not in _UNTRACKED_PATHS:
                duration_s = time.monotonic() - start
                REQUEST_COUNT.labels(method=request.method, endpoint=path, status=response.status_code).inc()
                REQUEST_LATENCY.labels(endpoint=path).observe(duration_s)
                log.info(
                    "request",
                    method=request.method,
                    path=path,
                    status=response.status_code,
                    duration_ms=round(duration_s * 1000, 1),
                    client=request.client.host if request.client else "unknown",
                )
            return response
        finally:
            structlog.contextvars.unbind_contextvars("request_id")


@dataclass
class TokenBucket:
    capacity: float
    refill_rate: float  # tokens per second
    tokens: float = 0.0
    last_refill: float = field(default_factory=time.monotonic)

    def __post_init__(self) -> None:
        self.tokens = self.capacity

    def consume(self, n: float = 1.0) -> bool:
        now = time.monotonic()
        self.tokens = min(self.capacity, self.tokens + (now - self.last_refill) * self.refill_rate)
        self.last_refill = now
        if self.tokens >= n:
            self.tokens -= n
            return True
        return False


class RateLimiter:
    """Per-client token buckets, optionally tuned per path prefix."""

    _MAX_BUCKETS = 10_000
    _STALE_AFTER = 300.0

    def __init__(self, default_capacity: float = 60, default_rate: float = 10) -> None:
        self._default = (default_capacity, default_rate)
        self._path_limits: dict[str, tuple[float, float]] = {}
        self._buckets: dict[str, TokenBucket] = {}
        self._last_cleanup = time.monotonic()

    def set_path_limit(self, prefix: str, capacity: float, rate: float) -> None:
        self._path_limits[prefix] = (capacity, rate)

    def _limits_for(self, path: str) -> tuple[float, float]:
        for prefix, limits in self._path_limits.items():
            if path.startswith(prefix):
                return limits
        return self._default

    def allow(self, client: str, path: str) -> bool:
        self._maybe_cleanup()
        key = f"{client}:{path}"
        bucket = self._buckets.get(key)
        if bucket is None:
            capacity, rate = self._limits_for(path)
            bucket = self._buckets[key] = TokenBucket(capacity=capacity, refill_rate=rate)
        return bucket.consume()

    def _maybe_cleanup(self) -> None:
        now = time.monotonic()
        force = len(self._buckets) > self._MAX_BUCKETS
        if not force and now - self._last_cleanup < self._STALE_AFTER:
            return
        self._last_cleanup = now
        for key in [k for k, b in self._buckets.items() if now - b.last_refill > self._STALE_AFTER]:
            del self._buckets[key]
        if len(self._buckets) > self._MAX_BUCKETS:
            log.warning("rate_limiter_bucket_overflow", count=len(self._buckets))

    @property
    def bucket_count(self) -> int:
        return len(self._buckets)


class RateLimitMiddleware(BaseHTTPMiddleware):
    def __init__(self, app: object, limiter: RateLimiter) -> None:
        super().__init__(app)  # type: ignore[arg-type]
        self._limiter = limiter

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        path = request.url.path
        if path in _UNTRACKED_PATHS:
            return await call_next(request)
        client = request.client.host if request.client else "unknown"
        if not self._limiter.allow(client, path):
            log.warning("rate_limited", client=client, path=path)
            return JSONResponse(
                status_code=429,
                content={"detail": "Too many requests"},
                headers={"Retry-After": "1"},
            )
        return await call_next(request)
