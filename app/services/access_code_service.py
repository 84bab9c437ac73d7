from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Tuple
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
import logging

from app.core.errors import AlreadyRedeemed, Expired, IdentityConflict, NotFound
from app.core.signing import generate_token, hash_secret
from app.models.integration import IntegrationAccessCode, IntegrationApp, IntegrationIdentityLink
from app.models.user import User, WaitlistMember
from app.services.identity_link_service import identity_link_service
from app.services.webhook_service import EVENT_IDENTITY_LINKED, webhook_service
from config import settings

logger = logging.getLogger(__name__)


class AccessCodeService:
    CODE_PREFIX = "fuac"
    CODE_BYTES = 32

    @classmethod
    async def issue(
        cls,
        *,
        integration_app_id: UUID,
        user_id: UUID,
        app_space_id: UUID,
        db: AsyncSession,
        external_user_id: Optional[str] = None,
        now: Optional[datetime] = None,
        commit: bool = True,
    ) -> Tuple[str, IntegrationAccessCode]:
        """Return the raw code exactly once; only its hash is stored."""
        now = now or datetime.now(timezone.utc)

        # A new code supersedes this user's outstanding codes for the app
        await db.execute(
            update(IntegrationAccessCode)
            .where(
                IntegrationAccessCode.integration_app_id == integration_app_id,
                IntegrationAccessCode.user_id == user_id,
                IntegrationAccessCode.status == "issued",
            )
            .values(status="expired")
        )

        raw_code = generate_token(cls.CODE_PREFIX, cls.CODE_BYTES)
        access_code = IntegrationAccessCode(
            integration_app_id=integration_app_id,
            user_id=user_id,
            app_space_id=app_space_id,
            code_hash=hash_secret(raw_code),
            expected_external_user_id=external_user_id,
            status="issued",
            expires_at=now + timedelta(minutes=settings.INTEGRATION_ACCESS_CODE_TTL_MINUTES),
            created_at=now,
        )
        db.add(access_code)
        if commit:
            await db.commit()
            await db.refresh(access_code)
        else:
            await db.flush()
        logger.info("Issued access code %s for user %s", access_code.access_code_id, user_id)
        return raw_code, access_code

    @staticmethod
    async def _membership_snapshot(*, user_id: UUID, app_space_id: UUID, db: AsyncSession) -> Dict[str, Any]:
        result = await db.execute(
            select(WaitlistMember).where(
                WaitlistMember.app_space_id == app_space_id,
                WaitlistMember.user_id == user_id,
            )
        )
        member = result.scalar_one_or_none()
        return {
            "status": member.status if member else None,
            "badge_tier": member.badge_tier if member else None,
            "app_space_id": app_space_id,
            "joined_at": member.joined_at if member else None,
            "approved_at": member.approved_at if member else None,
        }

    @staticmethod
    def _user_summary(user: User) -> Dict[str, Any]:
        return {
            "id": user.user_id,
            "email": user.email,
            "phone": user.phone,
            "username": user.username,
            "display_name": user.display_name,
            "avatar_url": user.avatar_url,
        }

    @staticmethod
    def _linked_identity(app: IntegrationApp, link: IntegrationIdentityLink) -> Dict[str, Any]:
        return {
            "integration_app_id": app.integration_app_id,
            "public_app_id": app.public_app_id,
            "external_user_id": link.external_user_id,
            "firstuser_user_id": link.user_id,
            "current_plan_tier": link.current_plan_tier,
            "linked_at": link.created_at,
        }

    @classmethod
    async def redeem(
        cls,
        *,
        app: IntegrationApp,
        code: str,
        external_user_id: str,
        db: AsyncSession,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        now = now or datetime.now(timezone.utc)
        integration_app_id = app.integration_app_id

        result = await db.execute(
            select(IntegrationAccessCode).where(
                IntegrationAccessCode.code_hash == hash_secret(code),
                IntegrationAccessCode.integration_app_id == integration_app_id,
            )
        )
        access_code = result.scalar_one_or_none()
        if not access_code:
            raise NotFound("Access code not found")
        if access_code.status == "redeemed":
            raise AlreadyRedeemed()
        if access_code.status == "expired":
            raise Expired()

        if now > access_code.expires_at:
            await db.execute(
                update(IntegrationAccessCode)
                .where(
                    IntegrationAccessCode.access_code_id == access_code.access_code_id,
                    IntegrationAccessCode.status == "issued",
                )
                .values(status="expired")
            )
            await db.commit()
            raise Expired()

        user_id = access_code.user_id
        app_space_id = access_code.app_space_id
        access_code_id = access_code.access_code_id

        # Both checks fail before any write so a conflicting exchange leaves the code usable
        expected = access_code.expected_external_user_id
        if expected is not None and expected != external_user_id:
            logger.warning("Access code %s presented for a different external user", access_code_id)
            raise IdentityConflict("Access code was issued for a different external user")
        await identity_link_service.find_conflict(
            integration_app_id=integration_app_id,
            user_id=user_id,
            external_user_id=external_user_id,
            db=db,
        )

        claim = await db.execute(
            update(IntegrationAccessCode)
            .where(
                IntegrationAccessCode.access_code_id == access_code_id,
                IntegrationAccessCode.status == "issued",
            )
            .values(
                status="redeemed",
                redeemed_at=now,
                redeemed_external_user_id=external_user_id,
            )
        )
        if claim.rowcount != 1:
            await db.rollback()
            raise AlreadyRedeemed()

        try:
            link = await identity_link_service.link(
                integration_app_id=integration_app_id,
                user_id=user_id,
                external_user_id=external_user_id,
                db=db,
            )
        except IdentityConflict:
            await db.rollback()
            raise

        await db.commit()
        await db.refresh(link)

        user = await db.get(User, user_id)
        membership = await cls._membership_snapshot(user_id=user_id, app_space_id=app_space_id, db=db)
        response = {
            "user": cls._user_summary(user),
            "linked_identity": cls._linked_identity(app, link),
            "membership": membership,
        }
        logger.info("Redeemed access code %s for app %s", access_code_id, integration_app_id)

        await webhook_service.dispatch(
            app=app,
            event_type=EVENT_IDENTITY_LINKED,
            data={
                "externalUserId": link.external_user_id,
                "firstuserUserId": str(link.user_id),
                "currentPlanTier": link.current_plan_tier,
                "membership": {
                    "status": membership["status"],
                    "badgeTier": membership["badge_tier"],
                    "appSpaceId": str(app_space_id),
                },
            },
            db=db,
            now=now,
        )
        return response


access_code_service = AccessCodeService()
