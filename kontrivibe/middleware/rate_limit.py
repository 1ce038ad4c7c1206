"""Per-IP request throttling for the KontriVibe API.

Each client IP gets one sliding-window bucket per rule. Login/signup and
payment creation get tight budgets since every create call reaches Fapshi;
verify polling gets a looser one. Fapshi webhooks are never throttled, a 429
there only produces redeliveries.

Counters live in process memory, so limits are per instance.
"""
from __future__ import annotations

import logging
import time
from collections import defaultdict, deque
from typing import NamedTuple, Optional

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger(__name__)


class LimitRule(NamedTuple):
    bucket: str
    limit: int
    window: int  # seconds


# First matching prefix wins
_RULES: list[LimitRule] = [
    LimitRule("/api/auth/", 10, 60),
    LimitRule("/api/subscriptions/create", 5, 300),
    LimitRule("/api/subscriptions/verify", 30, 60),
    LimitRule("/api/", 120, 60),
]
_DEFAULT_RULE = LimitRule("default", 120, 60)

_UNTHROTTLED_PATHS = {"/health", "/ready", "/metrics", "/", "/docs", "/openapi.json"}
_UNTHROTTLED_PREFIXES = ("/api/webhooks/",)


class RateLimitStore:
    """Request timestamps per key, pruned lazily on access."""

    def __init__(self):
        self._windows: dict[str, deque[float]] = defaultdict(deque)
        self._last_cleanup = time.monotonic()
        self._cleanup_interval = 300

    def check_and_record(self, key: str, limit: int, window_seconds: float) -> tuple[bool, int]:
        """Returns (allowed, hits in window). Refused hits are not counted."""
        self._maybe_cleanup()
        now = time.monotonic()
        hits = self._windows[key]
        while hits and hits[0] <= now - window_seconds:
            hits.popleft()
        if len(hits) >= limit:
            return False, len(hits)
        hits.append(now)
        return True, len(hits)

    def _maybe_cleanup(self) -> None:
        now = time.monotonic()
        if now - self._last_cleanup < self._cleanup_interval:
            return
        self._last_cleanup = now
        for key in [k for k, hits in self._windows.items() if not hits]:
            del self._windows[key]

    def clear(self) -> None:
        self._windows.clear()


_store = RateLimitStore()


def reset_store():
    _store.clear()


def _client_ip(request: Request) -> str:
    # Behind the load balancer the first X-Forwarded-For hop is the caller
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def _find_limit(path: str) -> Optional[LimitRule]:
    if path in _UNTHROTTLED_PATHS or path.startswith(_UNTHROTTLED_PREFIXES):
        return None
    return next((rule for rule in _RULES if path.startswith(rule.bucket)), _DEFAULT_RULE)


class RateLimitMiddleware(BaseHTTPMiddleware):

    async def dispatch(self, request: Request, call_next):
        rule = _find_limit(request.url.path)
        if rule is None:
            return await call_next(request)

        ip = _client_ip(request)
        allowed, hits = _store.check_and_record(f"{ip}:{rule.bucket}", rule.limit, rule.window)
        if not allowed:
            logger.warning("Throttled %s on %s: %d requests in %ds", ip, request.url.path, hits, rule.window)
            return JSONResponse(
                status_code=429,
                content={
                    "error": "rate_limited",
                    "message": "Too many requests. Please try again later.",
                    "retry_after": rule.window,
                },
                headers={"Retry-After": str(rule.window)},
            )

        response = await call_next(request)
        response.headers["X-RateLimit-Limit"] = str(rule.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, rule.limit - hits))
        return response
