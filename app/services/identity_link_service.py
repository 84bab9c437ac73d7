from __future__ import annotations

from typing import Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
import logging

from app.core.errors import IdentityConflict, NotLinked, ValidationError
from app.models.integration import IntegrationIdentityLink

logger = logging.getLogger(__name__)

PLAN_TIERS = ("free", "mid", "pro")


class IdentityLinkService:
    """(app, external user) <-> (app, platform user), unique in both directions."""

    @staticmethod
    async def get_by_external_user_id(
        *, integration_app_id: UUID, external_user_id: str, db: AsyncSession
    ) -> Optional[IntegrationIdentityLink]:
        result = await db.execute(
            select(IntegrationIdentityLink).where(
                IntegrationIdentityLink.integration_app_id == integration_app_id,
                IntegrationIdentityLink.external_user_id == external_user_id,
            )
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def get_by_user_id(
        *, integration_app_id: UUID, user_id: UUID, db: AsyncSession
    ) -> Optional[IntegrationIdentityLink]:
        result = await db.execute(
            select(IntegrationIdentityLink).where(
                IntegrationIdentityLink.integration_app_id == integration_app_id,
                IntegrationIdentityLink.user_id == user_id,
            )
        )
        return result.scalar_one_or_none()

    @classmethod
    async def find_conflict(
        cls, *, integration_app_id: UUID, user_id: UUID, external_user_id: str, db: AsyncSession
    ) -> Optional[IntegrationIdentityLink]:
        """Return the exact existing link, None if unlinked, raise on a mismatched pair."""
        by_external = await cls.get_by_external_user_id(
            integration_app_id=integration_app_id, external_user_id=external_user_id, db=db
        )
        if by_external and by_external.user_id != user_id:
            raise IdentityConflict("External user is already linked to a different account")

        by_user = await cls.get_by_user_id(integration_app_id=integration_app_id, user_id=user_id, db=db)
        if by_user and by_user.external_user_id != external_user_id:
            raise IdentityConflict("Account is already linked to a different external user")

        return by_external

    @classmethod
    async def link(
        cls, *, integration_app_id: UUID, user_id: UUID, external_user_id: str, db: AsyncSession
    ) -> IntegrationIdentityLink:
        """
        Insert the link inside the caller's transaction.

        The unique constraints decide concurrent races; the caller owns
        commit and rollback.
        """
        existing = await cls.find_conflict(
            integration_app_id=integration_app_id,
            user_id=user_id,
            external_user_id=external_user_id,
            db=db,
        )
        if existing:
            return existing

        link = IntegrationIdentityLink(
            integration_app_id=integration_app_id,
            user_id=user_id,
            external_user_id=external_user_id,
        )
        db.add(link)
        try:
            await db.flush()
        except IntegrityError as exc:
            logger.warning(
                "Identity link insert lost a race for app %s external user %s",
                integration_app_id,
                external_user_id,
            )
            raise IdentityConflict() from exc
        return link

    @classmethod
    async def require_link(
        cls, *, integration_app_id: UUID, external_user_id: str, db: AsyncSession
    ) -> IntegrationIdentityLink:
        link = await cls.get_by_external_user_id(
            integration_app_id=integration_app_id, external_user_id=external_user_id, db=db
        )
        if not link:
            raise NotLinked()
        return link

    @classmethod
    async def set_plan_tier(
        cls, *, integration_app_id: UUID, external_user_id: str, tier: str, db: AsyncSession
    ) -> IntegrationIdentityLink:
        tier = (tier or "").strip().lower()
        if tier not in PLAN_TIERS:
            raise ValidationError(f"planTier must be one of: {', '.join(PLAN_TIERS)}")

        link = await cls.require_link(
            integration_app_id=integration_app_id, external_user_id=external_user_id, db=db
        )
        if link.current_plan_tier != tier:
            link.current_plan_tier = tier
            await db.commit()
            await db.refresh(link)
        return link


identity_link_service = IdentityLinkService()
