from __future__ import annotations

from datetime import datetime, timedelta, timezone
import json
from typing import Any, Dict, List, Optional, Tuple
from uuid import UUID

from cryptography.fernet import Fernet, InvalidToken
from fastapi.encoders import jsonable_encoder
import httpx
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
import logging

from app.core.signing import (
    DELIVERY_HEADER,
    EVENT_HEADER,
    LEGACY_SIGNATURE_HEADER,
    SIGNATURE_HEADER,
    generate_id,
    generate_token,
    sign_payload,
)
from app.models.integration import IntegrationApp, IntegrationWebhookDelivery
from config import settings

logger = logging.getLogger(__name__)

EVENT_WAITLIST_JOINED = "waitlist.joined"
EVENT_IDENTITY_LINKED = "identity.linked"
EVENT_ACCESS_GRANTED = "access.granted"
EVENT_INTEGRATION_TEST = "integration.test"


class WebhookService:
    SECRET_PREFIX = "whsec"
    MAX_ERROR_LENGTH = 500

    # ------------------------------------------------------------------
    # Signing secret storage
    # ------------------------------------------------------------------
    @staticmethod
    def _build_fernet_keys() -> List[Fernet]:
        keys: List[Fernet] = []
        current_key = settings.get_integration_encryption_key()
        keys.append(Fernet(current_key.encode("utf-8")))
        if settings.INTEGRATION_ENCRYPTION_KEY_PREVIOUS:
            keys.append(Fernet(settings.INTEGRATION_ENCRYPTION_KEY_PREVIOUS.encode("utf-8")))
        return keys

    @classmethod
    def encrypt_secret(cls, raw_value: Optional[str]) -> Optional[str]:
        if raw_value is None:
            return None
        fernet = cls._build_fernet_keys()[0]
        return fernet.encrypt(raw_value.encode("utf-8")).decode("utf-8")

    @classmethod
    def decrypt_secret(cls, encrypted_value: Optional[str]) -> Optional[str]:
        if not encrypted_value:
            return None
        for fernet in cls._build_fernet_keys():
            try:
                return fernet.decrypt(encrypted_value.encode("utf-8")).decode("utf-8")
            except InvalidToken:
                continue
        raise ValueError("Unable to decrypt webhook signing secret with configured keys")

    @classmethod
    def generate_signing_secret(cls) -> str:
        return generate_token(cls.SECRET_PREFIX, 32)

    @classmethod
    def assign_signing_secret(cls, app: IntegrationApp) -> str:
        secret = cls.generate_signing_secret()
        app.webhook_secret_encrypted = cls.encrypt_secret(secret)
        app.webhook_secret_last_four = secret[-4:]
        return secret

    @classmethod
    async def rotate_webhook_secret(cls, *, app: IntegrationApp, db: AsyncSession) -> str:
        secret = cls.assign_signing_secret(app)
        await db.commit()
        await db.refresh(app)
        logger.info("Rotated webhook signing secret for app %s", app.integration_app_id)
        return secret

    # ------------------------------------------------------------------
    # Envelope
    # ------------------------------------------------------------------
    @staticmethod
    def build_envelope(event_type: str, data: Dict[str, Any], now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or datetime.now(timezone.utc)
        return {
            "id": generate_id("evt", 12),
            "type": event_type,
            "createdAt": now.isoformat(),
            "data": jsonable_encoder(data),
        }

    @staticmethod
    def serialize_envelope(payload: Dict[str, Any]) -> bytes:
        # sort_keys keeps the bytes stable across a JSONB round trip
        return json.dumps(payload, separators=(",", ":"), sort_keys=True, ensure_ascii=True).encode("utf-8")

    @classmethod
    def _signing_secret(cls, app: IntegrationApp) -> Optional[str]:
        return cls.decrypt_secret(app.webhook_secret_encrypted)

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------
    @staticmethod
    def enqueue_delivery(delivery_id: UUID) -> bool:
        """Hand the attempt to a Celery worker; a broker outage leaves it for the retry sweep."""
        if not settings.ENABLE_INTEGRATION_DELIVERY:
            return False
        try:
            from app.tasks.webhook_tasks import deliver_integration_webhook

            deliver_integration_webhook.delay(str(delivery_id))
            return True
        except Exception as exc:
            logger.warning("Could not enqueue webhook delivery %s: %s", delivery_id, exc)
            return False

    @classmethod
    async def dispatch(
        cls,
        *,
        app: IntegrationApp,
        event_type: str,
        data: Dict[str, Any],
        db: AsyncSession,
        now: Optional[datetime] = None,
    ) -> Optional[IntegrationWebhookDelivery]:
        if not app.webhook_url or not app.webhook_secret_encrypted:
            logger.info(
                "Skipping %s webhook for app %s: no webhook configured",
                event_type,
                app.integration_app_id,
            )
            return None

        payload = cls.build_envelope(event_type, data, now=now)
        delivery = IntegrationWebhookDelivery(
            integration_app_id=app.integration_app_id,
            event_id=payload["id"],
            event_type=event_type,
            payload=payload,
            signature="",
            attempt=1,
            status="pending",
        )
        try:
            delivery.signature = sign_payload(cls._signing_secret(app), cls.serialize_envelope(payload))
        except ValueError as exc:
            # Undecryptable secret: terminal row, nothing to enqueue
            cls._mark_failed(
                delivery,
                error=f"signing_secret_unavailable: {exc}",
                response_status=None,
                now=now or datetime.now(timezone.utc),
                retryable=False,
            )
        db.add(delivery)
        await db.commit()
        await db.refresh(delivery)
        if delivery.status == "failed":
            return delivery

        cls.enqueue_delivery(delivery.delivery_id)
        logger.info("Queued %s webhook %s for app %s", event_type, payload["id"], app.integration_app_id)
        return delivery

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------
    @staticmethod
    def backoff_for_attempt(attempt: int) -> timedelta:
        schedule = settings.INTEGRATION_WEBHOOK_BACKOFF_MINUTES or [1]
        index = min(max(attempt, 1) - 1, len(schedule) - 1)
        return timedelta(minutes=schedule[index])

    @classmethod
    async def _post(
        cls,
        *,
        url: str,
        body: bytes,
        headers: Dict[str, str],
        http_client: Optional[httpx.AsyncClient],
    ) -> httpx.Response:
        if http_client is not None:
            return await http_client.post(url, content=body, headers=headers)

        timeout = httpx.Timeout(settings.INTEGRATION_WEBHOOK_TIMEOUT_SECONDS)
        async with httpx.AsyncClient(timeout=timeout, follow_redirects=False) as client:
            return await client.post(url, content=body, headers=headers)

    @classmethod
    def _mark_failed(
        cls,
        delivery: IntegrationWebhookDelivery,
        *,
        error: str,
        response_status: Optional[int],
        now: datetime,
        retryable: bool = True,
    ) -> None:
        delivery.status = "failed"
        delivery.response_status = response_status
        delivery.last_error = error[: cls.MAX_ERROR_LENGTH]
        delivery.updated_at = now

        if retryable and delivery.attempt < settings.INTEGRATION_WEBHOOK_MAX_ATTEMPTS:
            delivery.next_retry_at = now + cls.backoff_for_attempt(delivery.attempt)
            logger.warning(
                "Webhook %s attempt %s failed (%s); retry at %s",
                delivery.event_id,
                delivery.attempt,
                error,
                delivery.next_retry_at.isoformat(),
            )
        else:
            delivery.next_retry_at = None
            logger.error(
                "Webhook %s permanently failed after %s attempts: %s",
                delivery.event_id,
                delivery.attempt,
                error,
            )

    @classmethod
    async def attempt_delivery(
        cls,
        *,
        delivery_id: UUID,
        db: AsyncSession,
        http_client: Optional[httpx.AsyncClient] = None,
        now: Optional[datetime] = None,
    ) -> Optional[IntegrationWebhookDelivery]:
        delivery = await db.get(IntegrationWebhookDelivery, delivery_id)
        if not delivery:
            logger.warning("Webhook delivery %s not found", delivery_id)
            return None
        if delivery.status != "pending":
            return delivery

        app = await db.get(IntegrationApp, delivery.integration_app_id)
        if not app or not app.webhook_url or not app.webhook_secret_encrypted:
            cls._mark_failed(
                delivery,
                error="webhook_not_configured",
                response_status=None,
                now=now or datetime.now(timezone.utc),
                retryable=False,
            )
            await db.commit()
            return delivery

        body = cls.serialize_envelope(delivery.payload)
        try:
            signature = sign_payload(cls._signing_secret(app), body)
        except ValueError as exc:
            cls._mark_failed(
                delivery,
                error=f"signing_secret_unavailable: {exc}",
                response_status=None,
                now=now or datetime.now(timezone.utc),
                retryable=False,
            )
            await db.commit()
            return delivery
        delivery.signature = signature
        headers = {
            "Content-Type": "application/json",
            SIGNATURE_HEADER: signature,
            LEGACY_SIGNATURE_HEADER: signature,
            EVENT_HEADER: delivery.event_type,
            DELIVERY_HEADER: delivery.event_id,
        }

        try:
            response = await cls._post(url=app.webhook_url, body=body, headers=headers, http_client=http_client)
        except httpx.HTTPError as exc:
            cls._mark_failed(
                delivery,
                error=f"network_error: {exc.__class__.__name__}",
                response_status=None,
                now=now or datetime.now(timezone.utc),
            )
            await db.commit()
            return delivery

        now = now or datetime.now(timezone.utc)
        if 200 <= response.status_code < 300:
            delivery.status = "delivered"
            delivery.response_status = response.status_code
            delivery.delivered_at = now
            delivery.next_retry_at = None
            delivery.last_error = None
            delivery.updated_at = now
            logger.info("Delivered webhook %s attempt %s", delivery.event_id, delivery.attempt)
        else:
            cls._mark_failed(
                delivery,
                error=f"http_{response.status_code}",
                response_status=response.status_code,
                now=now,
            )

        await db.commit()
        return delivery

    @classmethod
    async def retry_due_deliveries(
        cls,
        *,
        db: AsyncSession,
        http_client: Optional[httpx.AsyncClient] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, int]:
        now = now or datetime.now(timezone.utc)
        batch_size = settings.INTEGRATION_WEBHOOK_RETRY_BATCH_SIZE
        retried = 0
        resumed = 0

        due_result = await db.execute(
            select(IntegrationWebhookDelivery.delivery_id)
            .where(
                IntegrationWebhookDelivery.status == "failed",
                IntegrationWebhookDelivery.next_retry_at.is_not(None),
                IntegrationWebhookDelivery.next_retry_at <= now,
            )
            .order_by(IntegrationWebhookDelivery.next_retry_at.asc())
            .limit(batch_size)
        )
        for delivery_id in list(due_result.scalars().all()):
            # Clearing next_retry_at is the claim; only one worker wins it
            claim = await db.execute(
                update(IntegrationWebhookDelivery)
                .where(
                    IntegrationWebhookDelivery.delivery_id == delivery_id,
                    IntegrationWebhookDelivery.status == "failed",
                    IntegrationWebhookDelivery.next_retry_at.is_not(None),
                )
                .values(next_retry_at=None, updated_at=now)
            )
            if claim.rowcount != 1:
                await db.rollback()
                continue

            previous = await db.get(IntegrationWebhookDelivery, delivery_id)
            next_attempt = IntegrationWebhookDelivery(
                integration_app_id=previous.integration_app_id,
                event_id=previous.event_id,
                event_type=previous.event_type,
                payload=previous.payload,
                signature=previous.signature,
                attempt=previous.attempt + 1,
                status="pending",
            )
            db.add(next_attempt)
            await db.commit()
            await db.refresh(next_attempt)

            await cls.attempt_delivery(
                delivery_id=next_attempt.delivery_id,
                db=db,
                http_client=http_client,
                now=now,
            )
            retried += 1

        stale_cutoff = now - timedelta(seconds=settings.INTEGRATION_WEBHOOK_PENDING_GRACE_SECONDS)
        stale_result = await db.execute(
            select(IntegrationWebhookDelivery.delivery_id)
            .where(
                IntegrationWebhookDelivery.status == "pending",
                IntegrationWebhookDelivery.updated_at < stale_cutoff,
            )
            .order_by(IntegrationWebhookDelivery.created_at.asc())
            .limit(batch_size)
        )
        for delivery_id in list(stale_result.scalars().all()):
            claim = await db.execute(
                update(IntegrationWebhookDelivery)
                .where(
                    IntegrationWebhookDelivery.delivery_id == delivery_id,
                    IntegrationWebhookDelivery.status == "pending",
                    IntegrationWebhookDelivery.updated_at < stale_cutoff,
                )
                .values(updated_at=now)
            )
            await db.commit()
            if claim.rowcount != 1:
                continue
            await cls.attempt_delivery(delivery_id=delivery_id, db=db, http_client=http_client, now=now)
            resumed += 1

        if retried or resumed:
            logger.info("Webhook retry sweep: retried=%s resumed_pending=%s", retried, resumed)
        return {"retried": retried, "resumed_pending": resumed}

    # ------------------------------------------------------------------
    # Management helpers
    # ------------------------------------------------------------------
    @classmethod
    async def send_test_event(cls, *, app: IntegrationApp, db: AsyncSession) -> Optional[IntegrationWebhookDelivery]:
        return await cls.dispatch(
            app=app,
            event_type=EVENT_INTEGRATION_TEST,
            data={
                "integrationAppId": str(app.integration_app_id),
                "publicAppId": app.public_app_id,
                "message": "Test event from FirstUser",
            },
            db=db,
        )

    @staticmethod
    async def list_deliveries(
        *, integration_app_id: UUID, db: AsyncSession, limit: int = 50, offset: int = 0
    ) -> Tuple[List[IntegrationWebhookDelivery], int]:
        total_result = await db.execute(
            select(func.count(IntegrationWebhookDelivery.delivery_id)).where(
                IntegrationWebhookDelivery.integration_app_id == integration_app_id
            )
        )
        result = await db.execute(
            select(IntegrationWebhookDelivery)
            .where(IntegrationWebhookDelivery.integration_app_id == integration_app_id)
            .order_by(IntegrationWebhookDelivery.created_at.desc(), IntegrationWebhookDelivery.attempt.desc())
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all()), int(total_result.scalar() or 0)


webhook_service = WebhookService()
