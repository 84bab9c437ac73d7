"""
Middleware Package
Exports security middleware components
"""
from .rate_limit import RateLimiter, RateLimitResult
from .security_headers import SecurityHeadersMiddleware

__all__ = [
    "RateLimiter",
    "RateLimitResult",
    "SecurityHeadersMiddleware",
]
