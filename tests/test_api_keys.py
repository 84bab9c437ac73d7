"""API key authentication for the partner integration API."""

from app.services.api_key_service import api_key_service

PLAN_URL = "/api/integration/v1/users/ext-unknown/plan"


async def test_valid_key_is_authenticated(client, make_app, make_api_key):
    app, _ = await make_app()
    api_key = await make_api_key(app)

    response = await client.post(PLAN_URL, json={"planTier": "pro"}, headers={"Authorization": f"Bearer {api_key}"})

    # Authenticated, but the external user has no link yet
    assert response.status_code == 409
    assert response.json()["code"] == "not_linked"


async def test_missing_and_malformed_keys_are_rejected(client):
    missing = await client.post(PLAN_URL, json={"planTier": "pro"})
    malformed = await client.post(PLAN_URL, json={"planTier": "pro"}, headers={"Authorization": "Bearer nope"})

    for response in (missing, malformed):
        assert response.status_code == 401
        assert response.json()["code"] == "unauthorized"


async def test_valid_key_under_other_scheme_is_rejected(client, make_app, make_api_key):
    app, _ = await make_app()
    api_key = await make_api_key(app)

    bare = await client.post(PLAN_URL, json={"planTier": "pro"}, headers={"Authorization": api_key})
    basic = await client.post(PLAN_URL, json={"planTier": "pro"}, headers={"Authorization": f"Basic {api_key}"})

    for response in (bare, basic):
        assert response.status_code == 401
        assert response.json()["code"] == "unauthorized"


async def test_wrong_secret_is_rejected(client, make_app, make_api_key):
    app, _ = await make_app()
    api_key = await make_api_key(app)
    key_id = api_key.split(".", 1)[0]

    response = await client.post(
        PLAN_URL, json={"planTier": "pro"}, headers={"Authorization": f"Bearer {key_id}.not-the-secret"}
    )

    assert response.status_code == 401


async def test_revoked_key_is_rejected_on_next_use(client, db, make_app, make_api_key):
    app, _ = await make_app()
    api_key = await make_api_key(app)
    headers = {"Authorization": f"Bearer {api_key}"}

    first = await client.post(PLAN_URL, json={"planTier": "pro"}, headers=headers)
    assert first.status_code == 409

    await api_key_service.revoke_key(
        integration_app_id=app.integration_app_id, key_id=api_key.split(".", 1)[0], db=db
    )

    second = await client.post(PLAN_URL, json={"planTier": "pro"}, headers=headers)
    assert second.status_code == 401
    assert second.json()["message"] == "API key has been revoked"


async def test_rotation_can_revoke_existing_keys(client, db, make_app, make_api_key):
    app, _ = await make_app()
    old_key = await make_api_key(app)

    new_key, key, revoked = await api_key_service.rotate_key(
        integration_app_id=app.integration_app_id, name="Rotated", db=db, revoke_existing=True
    )

    assert revoked == [old_key.split(".", 1)[0]]
    assert key.revoked_at is None
    old = await client.post(PLAN_URL, json={"planTier": "pro"}, headers={"Authorization": f"Bearer {old_key}"})
    new = await client.post(PLAN_URL, json={"planTier": "pro"}, headers={"Authorization": f"Bearer {new_key}"})
    assert old.status_code == 401
    assert new.status_code == 409


async def test_rotation_keeps_existing_keys_by_default(db, make_app, make_api_key):
    app, _ = await make_app()
    await make_api_key(app)

    _, _, revoked = await api_key_service.rotate_key(integration_app_id=app.integration_app_id, name=None, db=db)

    keys = await api_key_service.list_keys(integration_app_id=app.integration_app_id, db=db)
    assert revoked == []
    assert len(keys) == 2
    assert all(item.revoked_at is None for item in keys)
