import time
from dataclasses import dataclass
from typing import Optional

import redis.asyncio as aioredis
import logging

from app.core.redis_keys import redis_key
from config import settings

logger = logging.getLogger(__name__)


@dataclass
class RateLimitResult:
    allowed: bool
    limit: int
    remaining: int
    retry_after: int

    def headers(self) -> dict:
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
        }
        if not self.allowed:
            headers["Retry-After"] = str(self.retry_after)
        return headers


class RateLimiter:
    """
    Fixed one-minute window shared by every API worker

    INCR and EXPIRE go out in one MULTI so a crashed worker never leaves a
    counter without a TTL.
    """

    WINDOW_SECONDS = 60

    def __init__(self, redis_client: aioredis.Redis, rate_limit: Optional[int] = None):
        self.redis = redis_client
        self.rate_limit = rate_limit or settings.INTEGRATION_RATE_LIMIT_PER_MINUTE

    async def hit(self, identifier: str, now: Optional[float] = None) -> RateLimitResult:
        now = int(now if now is not None else time.time())
        window = now // self.WINDOW_SECONDS
        key = redis_key("rate_limit", identifier, window)

        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.incr(key)
            pipe.expire(key, self.WINDOW_SECONDS + 5)
            count, _ = await pipe.execute()

        count = int(count)
        result = RateLimitResult(
            allowed=count <= self.rate_limit,
            limit=self.rate_limit,
            remaining=max(0, self.rate_limit - count),
            retry_after=(window + 1) * self.WINDOW_SECONDS - now,
        )
        if not result.allowed and count == self.rate_limit + 1:
            # Once per window is enough
            logger.warning("Rate limit of %s/min reached for %s", self.rate_limit, identifier)
        return result


__all__ = ['RateLimiter', 'RateLimitResult']
