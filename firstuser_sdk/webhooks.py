"""
Webhook receiver helpers for partner backends

Signatures are hex HMAC-SHA256 of the raw request body, keyed with the
webhook secret shown once at integration creation or rotation.
"""
from __future__ import annotations

import hashlib
import hmac
import inspect
import json
import logging
from typing import Any, Awaitable, Callable, Mapping, Optional, Union

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-FirstUser-Signature-Sha256"
LEGACY_SIGNATURE_HEADER = "X-FirstUser-Signature"
EVENT_HEADER = "X-FirstUser-Event"
DELIVERY_HEADER = "X-FirstUser-Delivery"
DEFAULT_WEBHOOK_PATH = "/api/firstuser/webhooks"

WebhookHandler = Callable[[dict], Union[Any, Awaitable[Any]]]


def _header(headers: Mapping[str, str], name: str) -> Optional[str]:
    value = headers.get(name)
    if value is None:
        lowered = name.lower()
        for key, candidate in headers.items():
            if key.lower() == lowered:
                return candidate
    return value


def compute_signature(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_webhook_signature(secret: str, body: bytes, headers: Mapping[str, str]) -> bool:
    """Accepts the current or the legacy signature header."""
    if not secret:
        return False
    signature = _header(headers, SIGNATURE_HEADER) or _header(headers, LEGACY_SIGNATURE_HEADER)
    if not signature:
        return False
    expected = compute_signature(secret, body).encode("ascii")
    supplied = signature.strip().lower().encode("utf-8", "surrogateescape")
    return hmac.compare_digest(expected, supplied)


def build_webhook_router(secret: str, handler: WebhookHandler, path: str = DEFAULT_WEBHOOK_PATH) -> APIRouter:
    """Mount on the partner backend; handler receives the decoded event envelope."""
    router = APIRouter(tags=["FirstUser Webhooks"])

    @router.post(path)
    async def receive_firstuser_webhook(request: Request):
        body = await request.body()
        if not verify_webhook_signature(secret, body, request.headers):
            logger.warning(
                "Rejected FirstUser webhook with invalid signature (delivery=%s)",
                request.headers.get(DELIVERY_HEADER),
            )
            return JSONResponse(status_code=401, content={"received": True, "validSignature": False})

        try:
            event = json.loads(body)
        except ValueError:
            event = None
        if not isinstance(event, dict):
            return JSONResponse(
                status_code=400,
                content={"received": True, "validSignature": True, "message": "Invalid JSON body"},
            )

        result = handler(event)
        if inspect.isawaitable(result):
            await result
        logger.info("Received FirstUser webhook %s (%s)", event.get("id"), event.get("type"))
        return {"received": True, "validSignature": True}

    return router
