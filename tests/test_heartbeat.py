"""Presence heartbeats and usage sessions."""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select

from app.core.errors import NotLinked
from app.models import IntegrationUsageSession
from app.services.heartbeat_service import heartbeat_service
from app.services.identity_link_service import identity_link_service

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


async def _linked_member(db, make_app, make_member, status="pending"):
    app, _ = await make_app()
    user = await make_member(app, status=status)
    await identity_link_service.link(
        integration_app_id=app.integration_app_id, user_id=user.user_id, external_user_id="ext-1", db=db
    )
    await db.commit()
    return app, user


async def _sessions(db):
    result = await db.execute(select(IntegrationUsageSession).order_by(IntegrationUsageSession.started_at))
    rows = list(result.scalars().all())
    for row in rows:
        await db.refresh(row)
    return rows


async def _beat(db, app, status="live", now=T0, external_user_id="ext-1"):
    return await heartbeat_service.record_heartbeat(
        app=app, external_user_id=external_user_id, status=status, client_platform="ios", db=db, now=now
    )


async def test_unlinked_user_creates_no_session(db, make_app):
    app, _ = await make_app()

    with pytest.raises(NotLinked):
        await _beat(db, app, external_user_id="ext-unknown")

    count = await db.execute(select(func.count(IntegrationUsageSession.session_id)))
    assert count.scalar() == 0


async def test_live_heartbeats_extend_one_session(db, make_app, make_member):
    app, _ = await _linked_member(db, make_app, make_member)

    first = await _beat(db, app, now=T0)
    await _beat(db, app, status="idle", now=T0 + timedelta(seconds=15))
    await _beat(db, app, now=T0 + timedelta(seconds=30))

    sessions = await _sessions(db)
    assert first == {"membership_status": "pending"}
    assert len(sessions) == 1
    assert sessions[0].client_platform == "ios"
    assert sessions[0].started_at == T0
    assert sessions[0].last_seen_at == T0 + timedelta(seconds=30)
    assert sessions[0].ended_at is None


async def test_gap_past_timeout_starts_new_session(db, make_app, make_member):
    app, _ = await _linked_member(db, make_app, make_member)

    await _beat(db, app, now=T0)
    await _beat(db, app, now=T0 + timedelta(seconds=30))
    await _beat(db, app, now=T0 + timedelta(seconds=120))

    first, second = await _sessions(db)
    assert first.ended_at == T0 + timedelta(seconds=30)
    assert first.duration_seconds == 30
    assert second.started_at == T0 + timedelta(seconds=120)
    assert second.ended_at is None


async def test_offline_closes_open_session(db, make_app, make_member):
    app, _ = await _linked_member(db, make_app, make_member)

    await _beat(db, app, now=T0)
    await _beat(db, app, status="offline", now=T0 + timedelta(seconds=20))

    (session,) = await _sessions(db)
    assert session.ended_at == T0 + timedelta(seconds=20)
    assert session.duration_seconds == 20


async def test_offline_without_open_session_writes_nothing(db, make_app, make_member):
    app, _ = await _linked_member(db, make_app, make_member)

    result = await _beat(db, app, status="offline")

    assert result == {"membership_status": "pending"}
    assert await _sessions(db) == []


async def test_membership_status_reflects_approval(db, make_app, make_member):
    app, _ = await _linked_member(db, make_app, make_member, status="approved")

    result = await _beat(db, app)

    assert result == {"membership_status": "approved"}


async def test_sweep_closes_only_stale_sessions(db, make_app, make_member):
    app, _ = await _linked_member(db, make_app, make_member)
    await _beat(db, app, now=T0)
    await _beat(db, app, now=T0 + timedelta(seconds=10))

    untouched = await heartbeat_service.sweep_stale_sessions(db=db, now=T0 + timedelta(seconds=30))
    swept = await heartbeat_service.sweep_stale_sessions(db=db, now=T0 + timedelta(minutes=5))
    again = await heartbeat_service.sweep_stale_sessions(db=db, now=T0 + timedelta(minutes=6))

    assert untouched == {"closed_sessions": 0}
    assert swept == {"closed_sessions": 1}
    assert again == {"closed_sessions": 0}
    (session,) = await _sessions(db)
    assert session.ended_at == T0 + timedelta(seconds=10)
    assert session.duration_seconds == 10


async def test_usage_summary_counts_closed_and_open_time(db, make_app, make_member):
    app, _ = await _linked_member(db, make_app, make_member)
    await _beat(db, app, now=T0)
    for seconds in (30, 60, 90):
        await _beat(db, app, now=T0 + timedelta(seconds=seconds))
    await _beat(db, app, status="offline", now=T0 + timedelta(minutes=2))
    await _beat(db, app, now=T0 + timedelta(minutes=10))

    summary = await heartbeat_service.usage_summary(
        integration_app_id=app.integration_app_id, db=db, now=T0 + timedelta(minutes=10, seconds=30)
    )

    assert summary == {"sessions": 2, "total_minutes": 2.5, "average_minutes": 1.25}


async def test_heartbeat_endpoint(client, db, make_app, make_member, make_api_key):
    app, _ = await _linked_member(db, make_app, make_member)
    api_key = await make_api_key(app)
    headers = {"Authorization": f"Bearer {api_key}"}

    linked = await client.post(
        "/api/integration/v1/usage/heartbeat",
        json={"externalUserId": "ext-1", "status": "live", "clientPlatform": "web"},
        headers=headers,
    )
    unlinked = await client.post(
        "/api/integration/v1/usage/heartbeat",
        json={"externalUserId": "ext-nobody", "status": "live"},
        headers=headers,
    )
    invalid = await client.post(
        "/api/integration/v1/usage/heartbeat",
        json={"externalUserId": "ext-1", "status": "away"},
        headers=headers,
    )

    assert linked.status_code == 200
    assert linked.json() == {"membershipStatus": "pending"}
    assert unlinked.status_code == 409
    assert unlinked.json()["code"] == "not_linked"
    assert invalid.status_code == 422
    assert len(await _sessions(db)) == 1


async def test_usage_summary_ends_silent_session_at_last_seen(db, make_app, make_member):
    app, _ = await _linked_member(db, make_app, make_member)
    await _beat(db, app, now=T0)
    # Arrives after the timeout, so the first session already ended at T0
    await _beat(db, app, status="offline", now=T0 + timedelta(minutes=2))
    await _beat(db, app, now=T0 + timedelta(minutes=10))

    summary = await heartbeat_service.usage_summary(
        integration_app_id=app.integration_app_id, db=db, now=T0 + timedelta(minutes=10, seconds=30)
    )

    assert summary == {"sessions": 2, "total_minutes": 0.5, "average_minutes": 0.25}
