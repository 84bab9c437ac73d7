from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict
from urllib.parse import urlencode
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession
import logging

from app.core.errors import Unauthorized
from app.core.jwt import token_manager
from app.models.integration import IntegrationApp
from app.services.identity_link_service import identity_link_service
from app.services.integration_app_service import integration_app_service
from config import settings

logger = logging.getLogger(__name__)

WIDGET_PATH = "/chat/widget"


class ChatWidgetService:
    @staticmethod
    async def create_widget_token(
        *, app: IntegrationApp, external_user_id: str, db: AsyncSession
    ) -> Dict[str, Any]:
        """Short-lived widget URL for a linked user; it carries no partner credential."""
        link = await identity_link_service.require_link(
            integration_app_id=app.integration_app_id,
            external_user_id=external_user_id,
            db=db,
        )
        token, expires_at = token_manager.create_widget_token(
            user_id=str(link.user_id),
            integration_app_id=str(app.integration_app_id),
            additional_claims={"pub": app.public_app_id},
        )
        query = urlencode({"token": token, "app": app.public_app_id})
        widget_url = f"{settings.PUBLIC_BASE_URL.rstrip('/')}{WIDGET_PATH}?{query}"
        logger.debug("Issued chat widget token for user %s on app %s", link.user_id, app.public_app_id)
        return {"token": token, "widget_url": widget_url, "expires_at": expires_at}

    @staticmethod
    async def widget_context(*, token: str, public_app_id: str, db: AsyncSession) -> Dict[str, Any]:
        """Who the framed widget acts for; the link must still exist when it loads."""
        claims = token_manager.decode_widget_token(token)
        app = await integration_app_service.get_by_public_app_id(public_app_id=public_app_id, db=db)
        if claims.get("app") != str(app.integration_app_id):
            logger.warning("Widget token for another app presented to %s", app.public_app_id)
            raise Unauthorized("Widget token was issued for a different app")

        try:
            user_id = UUID(str(claims.get("sub")))
        except ValueError:
            raise Unauthorized("Could not validate widget token")
        link = await identity_link_service.get_by_user_id(
            integration_app_id=app.integration_app_id, user_id=user_id, db=db
        )
        if not link:
            raise Unauthorized("Widget user is no longer linked to this app")

        return {
            "public_app_id": app.public_app_id,
            "app_name": app.name,
            "firstuser_user_id": link.user_id,
            "external_user_id": link.external_user_id,
            "expires_at": datetime.fromtimestamp(claims["exp"], tz=timezone.utc),
        }


chat_widget_service = ChatWidgetService()
