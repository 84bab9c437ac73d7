"""
Rate limiting dependencies

Counters live in the Redis client opened by the app lifespan. Without Redis,
or with RATE_LIMIT_ENABLED off, requests are not limited.
"""
from typing import Optional

from fastapi import HTTPException, Request, status
import logging

from app.core.redis_keys import get_redis_client
from app.middleware.rate_limit import RateLimiter, RateLimitResult
from config import settings

logger = logging.getLogger(__name__)


async def get_rate_limiter(rate_limit: Optional[int] = None) -> Optional[RateLimiter]:
    if not settings.RATE_LIMIT_ENABLED:
        return None
    redis_client = await get_redis_client()
    if redis_client is None:
        return None
    return RateLimiter(redis_client, rate_limit=rate_limit)


async def _enforce(identifier: str, rate_limit: Optional[int] = None) -> Optional[RateLimitResult]:
    limiter = await get_rate_limiter(rate_limit)
    if limiter is None:
        return None

    try:
        result = await limiter.hit(identifier)
    except Exception as exc:
        logger.warning("Rate limiter unavailable, allowing request: %s", exc)
        return None

    if not result.allowed:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Rate limit exceeded",
            headers=result.headers(),
        )
    return result


async def check_integration_rate_limit(*, identifier: str, limit_per_minute: Optional[int] = None) -> None:
    """Per API key limit for the partner integration API"""
    await _enforce(identifier, limit_per_minute)


async def check_rate_limit(request: Request) -> None:
    """Per client IP limit for the browser-facing hosted join endpoints"""
    result = await _enforce(f"ip:{client_ip(request)}", settings.HOSTED_JOIN_RATE_LIMIT_PER_MINUTE)
    if result is not None:
        request.state.rate_limit = result


def client_ip(request: Request) -> str:
    if settings.TRUST_PROXY_HEADERS:
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"
