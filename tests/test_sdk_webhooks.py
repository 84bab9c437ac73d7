"""Webhook receiver router for partner backends."""

import json

import httpx
from fastapi import FastAPI

from app.core.signing import sign_payload
from firstuser_sdk import build_webhook_router, verify_webhook_signature
from firstuser_sdk.webhooks import LEGACY_SIGNATURE_HEADER, SIGNATURE_HEADER

SECRET = "whsec_receiver_test"
BODY = json.dumps({"id": "evt_1", "type": "identity.linked", "data": {"externalUserId": "ext-1"}}).encode()


def receiver_app(events, handler=None):
    app = FastAPI()
    app.include_router(build_webhook_router(SECRET, handler or events.append))
    return app


async def post(app, body, headers):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://partner") as client:
        return await client.post(
            "/api/firstuser/webhooks",
            content=body,
            headers={"Content-Type": "application/json", **headers},
        )


def test_signature_matches_platform_signing():
    signature = sign_payload(SECRET, BODY)

    assert verify_webhook_signature(SECRET, BODY, {SIGNATURE_HEADER.lower(): signature})
    assert verify_webhook_signature(SECRET, BODY, {LEGACY_SIGNATURE_HEADER: signature.upper()})
    assert not verify_webhook_signature(SECRET, BODY + b"\n", {SIGNATURE_HEADER: signature})
    assert not verify_webhook_signature("", BODY, {SIGNATURE_HEADER: signature})
    assert not verify_webhook_signature(SECRET, BODY, {})


async def test_valid_delivery_reaches_handler():
    events = []
    response = await post(receiver_app(events), BODY, {SIGNATURE_HEADER: sign_payload(SECRET, BODY)})

    assert response.status_code == 200
    assert response.json() == {"received": True, "validSignature": True}
    assert events == [json.loads(BODY)]


async def test_legacy_header_and_async_handler():
    events = []

    async def handler(event):
        events.append(event["type"])

    response = await post(
        receiver_app(events, handler), BODY, {LEGACY_SIGNATURE_HEADER: sign_payload(SECRET, BODY)}
    )

    assert response.status_code == 200
    assert events == ["identity.linked"]


async def test_bad_signature_is_rejected():
    events = []
    response = await post(receiver_app(events), BODY, {SIGNATURE_HEADER: sign_payload("whsec_other", BODY)})

    assert response.status_code == 401
    assert response.json() == {"received": True, "validSignature": False}
    assert events == []


async def test_signed_non_object_body():
    events = []
    body = b"[1, 2, 3]"
    response = await post(receiver_app(events), body, {SIGNATURE_HEADER: sign_payload(SECRET, body)})

    assert response.status_code == 400
    assert events == []


def test_non_ascii_signature_is_invalid():
    assert not verify_webhook_signature(SECRET, BODY, {SIGNATURE_HEADER: "é"})
    assert not verify_webhook_signature(SECRET, BODY, {LEGACY_SIGNATURE_HEADER: "\udcff" * 64})


async def test_non_ascii_signature_header_gets_401():
    events = []
    response = await post(receiver_app(events), BODY, {SIGNATURE_HEADER: "é".encode("utf-8")})

    assert response.status_code == 401
    assert response.json() == {"received": True, "validSignature": False}
    assert events == []
