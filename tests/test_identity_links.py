"""Identity links and plan tiers."""

import pytest

from app.core.errors import IdentityConflict, NotLinked, ValidationError
from app.services.identity_link_service import identity_link_service


async def _link(db, app, user, external_user_id):
    link = await identity_link_service.link(
        integration_app_id=app.integration_app_id, user_id=user.user_id, external_user_id=external_user_id, db=db
    )
    await db.commit()
    return link


async def test_link_is_unique_in_both_directions(db, make_app, make_member):
    app, _ = await make_app()
    ada = await make_member(app)
    bob = await make_member(app)
    await _link(db, app, ada, "ext-ada")

    with pytest.raises(IdentityConflict):
        await identity_link_service.find_conflict(
            integration_app_id=app.integration_app_id, user_id=bob.user_id, external_user_id="ext-ada", db=db
        )
    with pytest.raises(IdentityConflict):
        await identity_link_service.find_conflict(
            integration_app_id=app.integration_app_id, user_id=ada.user_id, external_user_id="ext-other", db=db
        )


async def test_same_external_id_may_link_in_another_integration(db, make_app, make_member):
    app_a, _ = await make_app()
    app_b, _ = await make_app()
    user_a = await make_member(app_a)
    user_b = await make_member(app_b)

    await _link(db, app_a, user_a, "ext-1")
    link_b = await _link(db, app_b, user_b, "ext-1")

    assert link_b.integration_app_id == app_b.integration_app_id


async def test_set_plan_tier_normalizes_and_persists(db, make_app, make_member):
    app, _ = await make_app()
    user = await make_member(app)
    await _link(db, app, user, "ext-1")

    link = await identity_link_service.set_plan_tier(
        integration_app_id=app.integration_app_id, external_user_id="ext-1", tier=" PRO ", db=db
    )

    assert link.current_plan_tier == "pro"


async def test_set_plan_tier_rejects_unknown_tier(db, make_app, make_member):
    app, _ = await make_app()
    user = await make_member(app)
    await _link(db, app, user, "ext-1")

    with pytest.raises(ValidationError):
        await identity_link_service.set_plan_tier(
            integration_app_id=app.integration_app_id, external_user_id="ext-1", tier="enterprise", db=db
        )


async def test_set_plan_tier_requires_link(db, make_app):
    app, _ = await make_app()

    with pytest.raises(NotLinked):
        await identity_link_service.set_plan_tier(
            integration_app_id=app.integration_app_id, external_user_id="ext-missing", tier="mid", db=db
        )


async def test_plan_endpoint_updates_tier(client, db, make_app, make_api_key, make_member):
    app, _ = await make_app()
    api_key = await make_api_key(app)
    user = await make_member(app)
    await _link(db, app, user, "ext-1")

    response = await client.post(
        "/api/integration/v1/users/ext-1/plan",
        json={"planTier": "mid"},
        headers={"Authorization": f"Bearer {api_key}"},
    )

    assert response.status_code == 200
    assert response.json() == {"currentPlanTier": "mid"}
