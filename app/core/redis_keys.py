from __future__ import annotations

from typing import Iterable, List

from config import settings


def _segments(parts: Iterable[object], keep_wildcard: bool = False) -> List[str]:
    segments = [settings.REDIS_KEY_PREFIX]
    for part in parts:
        if part is None:
            continue
        value = str(part).strip()
        if not (keep_wildcard and value == "*"):
            value = value.strip(":")
        if value:
            segments.append(value)
    return segments


def redis_key(*parts: object) -> str:
    """Namespaced key, e.g. firstuser:integration:webhook:retry:lock"""
    return ":".join(_segments(parts))


def redis_pattern(*parts: object) -> str:
    """Namespaced SCAN pattern; a bare "*" part is kept as a wildcard"""
    return ":".join(_segments(parts, keep_wildcard=True))


async def get_redis_client():
    """Client opened by the app lifespan; None when Redis is down or outside the API process."""
    try:
        from main import redis_client
    except ImportError:
        return None
    return redis_client
