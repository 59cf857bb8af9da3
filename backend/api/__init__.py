# api/__init__.py
from api.rate_limit import (
    ALL_LIMITERS,
    SlidingWindowRateLimiter,
    payment_create_limiter,
    payment_status_limiter,
    webhook_limiter,
)

__all__ = [
    "ALL_LIMITERS",
    "SlidingWindowRateLimiter",
    "payment_create_limiter",
    "payment_status_limiter",
    "webhook_limiter",
]
