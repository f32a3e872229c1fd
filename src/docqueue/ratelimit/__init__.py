"""Request throttling per caller identity."""

from docqueue.ratelimit.limiter import (
    RateLimiter,
    RateLimitPolicy,
    RateLimitResult,
    policies_from_settings,
)

__all__ = [
    "RateLimitPolicy",
    "RateLimitResult",
    "RateLimiter",
    "policies_from_settings",
]
