from __future__ import annotations

from typing import Any, Dict, Tuple
from uuid import UUID

from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
import logging

from app.core.errors import NotFound, ValidationError
from app.core.signing import generate_id
from app.models.integration import (
    IntegrationApiKey,
    IntegrationApp,
    IntegrationIdentityLink,
    IntegrationWebhookDelivery,
)
from app.services.webhook_service import webhook_service
from config import settings

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = (
    "name",
    "redirect_enabled",
    "embedded_enabled",
    "web_redirect_url",
    "mobile_deep_link_url",
    "allowed_origins",
    "webhook_url",
)


class IntegrationAppService:
    @staticmethod
    async def create_app(*, data: Any, db: AsyncSession) -> Tuple[IntegrationApp, str]:
        """Create an integration and its webhook signing secret (returned once)."""
        app = IntegrationApp(
            app_space_id=data.app_space_id,
            public_app_id=data.public_app_id or generate_id("app", 8),
            name=data.name,
            redirect_enabled=data.redirect_enabled,
            embedded_enabled=data.embedded_enabled,
            web_redirect_url=data.web_redirect_url,
            mobile_deep_link_url=data.mobile_deep_link_url,
            allowed_origins=list(data.allowed_origins or []),
            webhook_url=data.webhook_url,
        )
        secret = webhook_service.assign_signing_secret(app)
        db.add(app)
        try:
            await db.commit()
        except IntegrityError as exc:
            await db.rollback()
            raise ValidationError("An integration already exists for this app space or public app id") from exc
        await db.refresh(app)
        logger.info("Created integration app %s (%s)", app.integration_app_id, app.public_app_id)
        return app, secret

    @staticmethod
    async def get_app(*, integration_app_id: UUID, db: AsyncSession) -> IntegrationApp:
        app = await db.get(IntegrationApp, integration_app_id)
        if not app:
            raise NotFound("Integration app not found")
        return app

    @staticmethod
    async def get_by_public_app_id(*, public_app_id: str, db: AsyncSession) -> IntegrationApp:
        result = await db.execute(select(IntegrationApp).where(IntegrationApp.public_app_id == public_app_id))
        app = result.scalar_one_or_none()
        if not app:
            raise NotFound("Integration app not found")
        return app

    @staticmethod
    async def update_app(*, app: IntegrationApp, data: Any, db: AsyncSession) -> IntegrationApp:
        changes = data.model_dump(exclude_unset=True)
        for field in UPDATABLE_FIELDS:
            if field in changes:
                value = changes[field]
                if field == "allowed_origins":
                    value = list(value or [])
                elif field in ("redirect_enabled", "embedded_enabled") and value is None:
                    continue
                setattr(app, field, value)
        await db.commit()
        await db.refresh(app)
        logger.info("Updated integration app %s fields=%s", app.integration_app_id, sorted(changes))
        return app

    @staticmethod
    async def health(*, app: IntegrationApp, db: AsyncSession) -> Dict[str, Any]:
        app_id = app.integration_app_id
        active_keys = await db.execute(
            select(func.count(IntegrationApiKey.api_key_id)).where(
                IntegrationApiKey.integration_app_id == app_id,
                IntegrationApiKey.revoked_at.is_(None),
            )
        )
        linked_users = await db.execute(
            select(func.count(IntegrationIdentityLink.link_id)).where(
                IntegrationIdentityLink.integration_app_id == app_id
            )
        )
        pending = await db.execute(
            select(func.count(IntegrationWebhookDelivery.delivery_id)).where(
                IntegrationWebhookDelivery.integration_app_id == app_id,
                IntegrationWebhookDelivery.status == "pending",
            )
        )
        # Terminal failures only; superseded attempts also have next_retry_at cleared
        failed = await db.execute(
            select(func.count(IntegrationWebhookDelivery.delivery_id)).where(
                IntegrationWebhookDelivery.integration_app_id == app_id,
                IntegrationWebhookDelivery.status == "failed",
                IntegrationWebhookDelivery.next_retry_at.is_(None),
                or_(
                    IntegrationWebhookDelivery.attempt >= settings.INTEGRATION_WEBHOOK_MAX_ATTEMPTS,
                    IntegrationWebhookDelivery.last_error == "webhook_not_configured",
                ),
            )
        )
        last_delivered = await db.execute(
            select(func.max(IntegrationWebhookDelivery.delivered_at)).where(
                IntegrationWebhookDelivery.integration_app_id == app_id
            )
        )
        return {
            "integration_app_id": app_id,
            "active_api_keys": int(active_keys.scalar() or 0),
            "linked_users": int(linked_users.scalar() or 0),
            "webhook_configured": bool(app.webhook_url and app.webhook_secret_encrypted),
            "pending_deliveries": int(pending.scalar() or 0),
            "failed_deliveries": int(failed.scalar() or 0),
            "last_delivered_at": last_delivered.scalar(),
        }


integration_app_service = IntegrationAppService()
