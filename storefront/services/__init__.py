"""Process-local request guards shared by the HTTP layer."""

from .dashboard_auth import DashboardAuth
from .idempotency import IdempotencyCache
from .rate_limiter import RateLimiter

__all__ = [
    "DashboardAuth",
    "IdempotencyCache",
    "RateLimiter",
]
