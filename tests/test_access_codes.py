"""Access code issuance and one-time redemption."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from app.core.errors import AlreadyRedeemed, Expired, IdentityConflict, NotFound
from app.models import IntegrationAccessCode, IntegrationApp, IntegrationIdentityLink
from app.core.signing import hash_secret
from app.services.access_code_service import access_code_service


async def _code_row(db, raw_code):
    result = await db.execute(
        select(IntegrationAccessCode).where(IntegrationAccessCode.code_hash == hash_secret(raw_code))
    )
    row = result.scalar_one()
    await db.refresh(row)
    return row


async def test_redeem_links_identity_and_returns_membership(db, make_app, make_member, issue_code):
    app, _ = await make_app()
    user = await make_member(app, email="ada@example.com")
    code = await issue_code(app, user)

    result = await access_code_service.redeem(app=app, code=code, external_user_id="ext-ada", db=db)

    assert result["user"]["id"] == user.user_id
    assert result["user"]["email"] == "ada@example.com"
    assert result["linked_identity"]["external_user_id"] == "ext-ada"
    assert result["linked_identity"]["firstuser_user_id"] == user.user_id
    assert result["linked_identity"]["current_plan_tier"] == "free"
    assert result["membership"]["status"] == "pending"
    assert result["membership"]["app_space_id"] == app.app_space_id

    row = await _code_row(db, code)
    assert row.status == "redeemed"
    assert row.redeemed_external_user_id == "ext-ada"


async def test_code_is_single_use(db, make_app, make_member, issue_code):
    app, _ = await make_app()
    user = await make_member(app)
    code = await issue_code(app, user)

    await access_code_service.redeem(app=app, code=code, external_user_id="ext-1", db=db)
    with pytest.raises(AlreadyRedeemed):
        await access_code_service.redeem(app=app, code=code, external_user_id="ext-1", db=db)


async def test_expired_code_is_rejected_and_marked(db, make_app, make_member, issue_code):
    app, _ = await make_app()
    user = await make_member(app)
    code = await issue_code(app, user, now=datetime.now(timezone.utc) - timedelta(minutes=11))

    with pytest.raises(Expired):
        await access_code_service.redeem(app=app, code=code, external_user_id="ext-1", db=db)

    row = await _code_row(db, code)
    assert row.status == "expired"
    links = await db.execute(select(IntegrationIdentityLink))
    assert links.scalars().all() == []


async def test_unknown_code_is_not_found(db, make_app):
    app, _ = await make_app()

    with pytest.raises(NotFound):
        await access_code_service.redeem(app=app, code="fuac_does-not-exist", external_user_id="ext-1", db=db)


async def test_code_is_scoped_to_its_integration(db, make_app, make_member, issue_code):
    app_a, _ = await make_app()
    app_b, _ = await make_app()
    user = await make_member(app_a)
    code = await issue_code(app_a, user)

    with pytest.raises(NotFound):
        await access_code_service.redeem(app=app_b, code=code, external_user_id="ext-1", db=db)


async def test_new_code_supersedes_outstanding_code(db, make_app, make_member, issue_code):
    app, _ = await make_app()
    user = await make_member(app)
    first = await issue_code(app, user)
    second = await issue_code(app, user)

    with pytest.raises(Expired):
        await access_code_service.redeem(app=app, code=first, external_user_id="ext-1", db=db)
    result = await access_code_service.redeem(app=app, code=second, external_user_id="ext-1", db=db)
    assert result["linked_identity"]["external_user_id"] == "ext-1"


async def test_conflicting_exchange_writes_nothing(db, make_app, make_member, issue_code):
    app, _ = await make_app()
    first_user = await make_member(app)
    second_user = await make_member(app)
    await access_code_service.redeem(
        app=app, code=await issue_code(app, first_user), external_user_id="ext-taken", db=db
    )
    code = await issue_code(app, second_user)

    with pytest.raises(IdentityConflict):
        await access_code_service.redeem(app=app, code=code, external_user_id="ext-taken", db=db)

    row = await _code_row(db, code)
    assert row.status == "issued"
    assert row.redeemed_at is None

    # The untouched code still works for a non-conflicting identity
    result = await access_code_service.redeem(app=app, code=code, external_user_id="ext-free", db=db)
    assert result["linked_identity"]["firstuser_user_id"] == second_user.user_id


async def test_account_cannot_link_to_second_external_user(db, make_app, make_member, issue_code):
    app, _ = await make_app()
    user = await make_member(app)
    await access_code_service.redeem(app=app, code=await issue_code(app, user), external_user_id="ext-a", db=db)

    with pytest.raises(IdentityConflict):
        await access_code_service.redeem(
            app=app, code=await issue_code(app, user), external_user_id="ext-b", db=db
        )


async def test_relinking_same_pair_is_accepted(db, make_app, make_member, issue_code):
    app, _ = await make_app()
    user = await make_member(app)
    await access_code_service.redeem(app=app, code=await issue_code(app, user), external_user_id="ext-a", db=db)

    result = await access_code_service.redeem(
        app=app, code=await issue_code(app, user), external_user_id="ext-a", db=db
    )

    links = await db.execute(select(IntegrationIdentityLink))
    assert len(links.scalars().all()) == 1
    assert result["linked_identity"]["external_user_id"] == "ext-a"


async def test_redeem_dispatches_identity_linked_webhook(db, make_app, make_member, issue_code, enqueued):
    app, _ = await make_app(webhook_url="https://partner.example.com/hooks/firstuser")
    user = await make_member(app)
    code = await issue_code(app, user)

    await access_code_service.redeem(app=app, code=code, external_user_id="ext-1", db=db)

    assert len(enqueued) == 1


async def test_concurrent_redemptions_have_exactly_one_winner(session_factory, make_app, make_member, issue_code):
    app, _ = await make_app()
    user = await make_member(app)
    code = await issue_code(app, user)
    app_id = app.integration_app_id

    async def attempt():
        async with session_factory() as session:
            session_app = await session.get(IntegrationApp, app_id)
            return await access_code_service.redeem(
                app=session_app, code=code, external_user_id="ext-race", db=session
            )

    results = await asyncio.gather(*(attempt() for _ in range(5)), return_exceptions=True)

    successes = [item for item in results if isinstance(item, dict)]
    failures = [item for item in results if isinstance(item, Exception)]
    assert len(successes) == 1
    assert len(failures) == 4
    assert all(isinstance(item, AlreadyRedeemed) for item in failures)

    async with session_factory() as session:
        links = await session.execute(select(IntegrationIdentityLink))
        assert len(links.scalars().all()) == 1
