"""Celery task bodies and worker configuration."""

from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

import httpx
import pytest

import app.core.database as database
from app.celery_config import DELIVERY_QUEUE, MAINTENANCE_QUEUE, build_beat_schedule, celery_app
from app.models import IntegrationUsageSession
from app.services.access_code_service import access_code_service
from app.services.heartbeat_service import heartbeat_service
from app.services.webhook_service import WebhookService, webhook_service
from app.tasks import webhook_tasks
from config import settings


@pytest.fixture
def task_sessions(monkeypatch, session_factory):
    """Point create_task_session at the per-test database."""

    @asynccontextmanager
    async def _create_task_session():
        async with session_factory() as session:
            yield session

    monkeypatch.setattr(database, "create_task_session", _create_task_session)


@pytest.fixture
def partner_accepts(monkeypatch):
    sent = []

    async def fake_post(cls, *, url, body, headers, http_client):
        if http_client is not None:
            return await http_client.post(url, content=body, headers=headers)
        sent.append(url)
        return httpx.Response(200, request=httpx.Request("POST", url))

    monkeypatch.setattr(WebhookService, "_post", classmethod(fake_post))
    return sent


class FakeLockClient:
    def __init__(self, acquired):
        self.acquired = acquired
        self.closed = False

    async def set(self, *args, **kwargs):
        return self.acquired

    async def eval(self, *args):
        return 1

    async def aclose(self):
        self.closed = True


def test_routes_and_schedule():
    routes = celery_app.conf.task_routes
    assert routes["app.tasks.webhook_tasks.deliver_integration_webhook"]["queue"] == DELIVERY_QUEUE
    assert routes["app.tasks.webhook_tasks.sweep_stale_usage_sessions"]["queue"] == MAINTENANCE_QUEUE
    assert set(build_beat_schedule()) == {
        "sweep-stale-usage-sessions",
        "flush-api-key-usage",
        "retry-webhook-deliveries",
    }


def test_schedule_without_delivery(monkeypatch):
    monkeypatch.setattr(settings, "ENABLE_INTEGRATION_DELIVERY", False)
    assert "retry-webhook-deliveries" not in build_beat_schedule()


async def test_deliver_task(db, make_app, task_sessions, partner_accepts):
    app, _ = await make_app(webhook_url="https://partner.example.com/hooks")
    delivery = await webhook_service.send_test_event(app=app, db=db)

    result = await webhook_tasks._async_deliver_integration_webhook(str(delivery.delivery_id))

    assert result == {"status": "delivered", "http_status": "200", "error": None}
    assert partner_accepts == ["https://partner.example.com/hooks"]


async def test_deliver_task_rejects_bad_ids(task_sessions):
    assert await webhook_tasks._async_deliver_integration_webhook("not-a-uuid") == {
        "status": "invalid_delivery_id"
    }
    assert await webhook_tasks._async_deliver_integration_webhook(
        "00000000-0000-0000-0000-000000000000"
    ) == {"status": "delivery_not_found"}


async def test_retry_sweep_runs_without_redis(db, make_app, task_sessions, partner_accepts, monkeypatch):
    def unavailable():
        raise ConnectionError("redis down")

    monkeypatch.setattr(webhook_tasks, "_task_redis_client", unavailable)
    app, _ = await make_app(webhook_url="https://partner.example.com/hooks")
    delivery = await webhook_service.send_test_event(app=app, db=db)
    async with httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(500))) as client:
        await webhook_service.attempt_delivery(
            delivery_id=delivery.delivery_id,
            db=db,
            http_client=client,
            now=datetime.now(timezone.utc) - timedelta(minutes=5),
        )

    result = await webhook_tasks._async_retry_webhook_deliveries()

    assert result == {"retried": 1, "resumed_pending": 0}
    assert len(partner_accepts) == 1


async def test_retry_sweep_skips_when_locked(task_sessions, monkeypatch):
    lock_client = FakeLockClient(acquired=False)
    monkeypatch.setattr(webhook_tasks, "_task_redis_client", lambda: lock_client)

    assert await webhook_tasks._async_retry_webhook_deliveries() == {"retried": 0, "resumed_pending": 0}
    assert lock_client.closed


async def test_retry_sweep_releases_lock(task_sessions, monkeypatch):
    lock_client = FakeLockClient(acquired=True)
    monkeypatch.setattr(webhook_tasks, "_task_redis_client", lambda: lock_client)

    assert await webhook_tasks._async_retry_webhook_deliveries() == {"retried": 0, "resumed_pending": 0}
    assert lock_client.closed


async def test_sweep_task_closes_stale_sessions(db, make_app, make_member, issue_code, task_sessions):
    app, _ = await make_app()
    user = await make_member(app)
    await access_code_service.redeem(app=app, code=await issue_code(app, user), external_user_id="ext-1", db=db)
    await heartbeat_service.record_heartbeat(
        app=app,
        external_user_id="ext-1",
        status="live",
        client_platform="web",
        db=db,
        now=datetime.now(timezone.utc) - timedelta(minutes=10),
    )

    assert await webhook_tasks._async_sweep_stale_usage_sessions() == {"closed_sessions": 1}

    session = (await db.execute(IntegrationUsageSession.__table__.select())).one()
    assert session.ended_at is not None
