from __future__ import annotations

import asyncio
import secrets
from typing import Dict, Optional, Tuple
from uuid import UUID

import redis.asyncio as aioredis
import logging

from app.celery_config import celery_app
from app.core.redis_keys import redis_key
from app.services.api_key_service import api_key_service
from app.services.heartbeat_service import heartbeat_service
from app.services.webhook_service import webhook_service
from config import settings

logger = logging.getLogger(__name__)
RETRY_LOCK_KEY = redis_key("integration", "webhook", "retry", "lock")
RETRY_LOCK_TTL_SECONDS = 55


def _task_redis_client() -> aioredis.Redis:
    return aioredis.from_url(
        settings.REDIS_URL,
        encoding="utf-8",
        decode_responses=True,
        max_connections=5,
    )


async def _acquire_retry_lock() -> Tuple[Optional[aioredis.Redis], Optional[str], bool]:
    """
    Single retry sweep at a time. Claims are row-level compare-and-swap, so
    when Redis is down the sweep still runs.
    """
    redis_client = None
    try:
        redis_client = _task_redis_client()
        token = secrets.token_hex(16)
        acquired = await redis_client.set(RETRY_LOCK_KEY, token, ex=RETRY_LOCK_TTL_SECONDS, nx=True)
        if acquired:
            return redis_client, token, True
        await redis_client.aclose()
        return None, None, False
    except Exception as exc:
        logger.warning("Retry lock unavailable, sweeping without it: %s", exc)
        if redis_client is not None:
            await redis_client.aclose()
        return None, None, True


async def _release_retry_lock(redis_client: aioredis.Redis, token: str) -> None:
    try:
        await redis_client.eval(
            "if redis.call('get', KEYS[1]) == ARGV[1] then "
            "return redis.call('del', KEYS[1]) else return 0 end",
            1,
            RETRY_LOCK_KEY,
            token,
        )
    except Exception as exc:
        logger.warning("Failed to release retry lock: %s", exc)
    finally:
        await redis_client.aclose()


@celery_app.task(
    name="app.tasks.webhook_tasks.deliver_integration_webhook",
    bind=True,
    autoretry_for=(Exception,),
    retry_kwargs={"max_retries": 3, "countdown": 30},
)
def deliver_integration_webhook(self, delivery_id: str):
    return asyncio.run(_async_deliver_integration_webhook(delivery_id))


async def _async_deliver_integration_webhook(delivery_id: str) -> Dict[str, Optional[str]]:
    if not settings.ENABLE_INTEGRATION_DELIVERY:
        return {"status": "skipped"}

    try:
        delivery_uuid = UUID(delivery_id)
    except ValueError:
        return {"status": "invalid_delivery_id"}

    from app.core.database import create_task_session

    async with create_task_session() as db:
        delivery = await webhook_service.attempt_delivery(delivery_id=delivery_uuid, db=db)
        if delivery is None:
            return {"status": "delivery_not_found"}
        return {
            "status": delivery.status,
            "http_status": str(delivery.response_status) if delivery.response_status else None,
            "error": delivery.last_error,
        }


@celery_app.task(
    name="app.tasks.webhook_tasks.retry_webhook_deliveries",
    bind=True,
    autoretry_for=(Exception,),
    retry_kwargs={"max_retries": 1, "countdown": 30},
)
def retry_webhook_deliveries(self):
    return asyncio.run(_async_retry_webhook_deliveries())


async def _async_retry_webhook_deliveries() -> Dict[str, int]:
    if not settings.ENABLE_INTEGRATION_API or not settings.ENABLE_INTEGRATION_DELIVERY:
        return {"retried": 0, "resumed_pending": 0}

    lock_client, lock_token, should_run = await _acquire_retry_lock()
    if not should_run:
        logger.info("Skipping webhook retry sweep because another worker holds the lock")
        return {"retried": 0, "resumed_pending": 0}

    from app.core.database import create_task_session

    try:
        async with create_task_session() as db:
            return await webhook_service.retry_due_deliveries(db=db)
    finally:
        if lock_client and lock_token:
            await _release_retry_lock(lock_client, lock_token)


@celery_app.task(
    name="app.tasks.webhook_tasks.sweep_stale_usage_sessions",
    bind=True,
    autoretry_for=(Exception,),
    retry_kwargs={"max_retries": 1, "countdown": 30},
)
def sweep_stale_usage_sessions(self):
    return asyncio.run(_async_sweep_stale_usage_sessions())


async def _async_sweep_stale_usage_sessions() -> Dict[str, int]:
    if not settings.ENABLE_INTEGRATION_API:
        return {"closed_sessions": 0}

    from app.core.database import create_task_session

    async with create_task_session() as db:
        return await heartbeat_service.sweep_stale_sessions(db=db)


@celery_app.task(
    name="app.tasks.webhook_tasks.flush_api_key_usage",
    bind=True,
    autoretry_for=(Exception,),
    retry_kwargs={"max_retries": 2, "countdown": 300},
)
def flush_api_key_usage(self):
    return asyncio.run(_async_flush_api_key_usage())


async def _async_flush_api_key_usage() -> Dict[str, int]:
    if not settings.ENABLE_INTEGRATION_API:
        return {"keys_processed": 0, "total_increment": 0}

    from app.core.database import create_task_session

    # The worker has no app lifespan, so it brings its own Redis connection
    redis_client = _task_redis_client()
    try:
        async with create_task_session() as db:
            return await api_key_service.flush_usage_to_db(db=db, redis_client=redis_client)
    finally:
        await redis_client.aclose()
