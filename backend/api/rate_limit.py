# api/rate_limit.py
# ============================================================================
# RATE LIMITERS
# ============================================================================
# Sliding-window limiters keyed by client IP, used as FastAPI dependencies:
#   create  -> 10 per 15 minutes
#   status  -> 30 per minute
#   webhook -> 100 per minute
# ============================================================================

import asyncio
import math
import os
import time
from collections import deque
from typing import Callable, Deque, Dict, Optional, Tuple

import structlog
from fastapi import HTTPException, Request

logger = structlog.get_logger().bind(component="rate_limit")


def parse_limit(raw: str, default: Tuple[int, float]) -> Tuple[int, float]:
    """Parse ``"count/seconds"``. Falls back to ``default`` on malformed input."""
    try:
        count, seconds = raw.split("/", 1)
        parsed = (int(count), float(seconds))
    except (AttributeError, ValueError):
        return default
    if parsed[0] <= 0 or parsed[1] <= 0:
        return default
    return parsed


# Forwarding headers are client-controlled unless a trusted proxy sets them
TRUST_PROXY_HEADERS = os.getenv("TRUST_PROXY_HEADERS", "false").lower() == "true"


def client_ip(request: Request, trust_proxy: Optional[bool] = None) -> str:
    trusted = TRUST_PROXY_HEADERS if trust_proxy is None else trust_proxy
    if trusted:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            return forwarded.split(",")[0].strip()
        real_ip = request.headers.get("x-real-ip")
        if real_ip:
            return real_ip
        cf_ip = request.headers.get("cf-connecting-ip")
        if cf_ip:
            return cf_ip
    return request.client.host if request.client else "unknown"


class SlidingWindowRateLimiter:
    """In-process limiter. Each key keeps the timestamps of its recent hits."""

    def __init__(
        self,
        name: str,
        limit: int,
        window_seconds: float,
        message: str = "Too many requests, please try again later.",
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.limit = limit
        self.window_seconds = window_seconds
        self.message = message
        self._clock = clock
        self._hits: Dict[str, Deque[float]] = {}
        self._lock = asyncio.Lock()

    async def hit(self, key: str) -> Optional[float]:
        """Record a hit. Returns None when allowed, else seconds until retry."""
        async with self._lock:
            now = self._clock()
            window_start = now - self.window_seconds
            hits = self._hits.setdefault(key, deque())
            while hits and hits[0] <= window_start:
                hits.popleft()

            if len(hits) >= self.limit:
                return max(hits[0] + self.window_seconds - now, 0.0)

            hits.append(now)
            if len(self._hits) > 10_000:
                self._prune(window_start)
            return None

    def _prune(self, window_start: float):
        for key in [k for k, v in self._hits.items() if not v or v[-1] <= window_start]:
            del self._hits[key]

    def reset(self):
        self._hits.clear()

    async def __call__(self, request: Request):
        key = client_ip(request)
        retry_after = await self.hit(key)
        if retry_after is not None:
            logger.warning("rate_limited", limiter=self.name, client=key, path=request.url.path)
            raise HTTPException(
                status_code=429,
                detail=self.message,
                headers={"Retry-After": str(max(1, math.ceil(retry_after)))},
            )


# ============================================================================
# CONFIGURED LIMITERS
# ============================================================================

_create = parse_limit(os.getenv("RATE_LIMIT_CREATE", "10/900"), (10, 900))
_status = parse_limit(os.getenv("RATE_LIMIT_STATUS", "30/60"), (30, 60))
_webhook = parse_limit(os.getenv("RATE_LIMIT_WEBHOOK", "100/60"), (100, 60))

payment_create_limiter = SlidingWindowRateLimiter(
    "payment_create", *_create,
    message="Too many payment attempts, please try again later.",
)
payment_status_limiter = SlidingWindowRateLimiter(
    "payment_status", *_status,
    message="Too many status checks, please slow down.",
)
webhook_limiter = SlidingWindowRateLimiter(
    "webhook", *_webhook,
    message="Too many webhook requests.",
)

ALL_LIMITERS = (payment_create_limiter, payment_status_limiter, webhook_limiter)
