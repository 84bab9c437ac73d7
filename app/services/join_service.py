"""
Embedded and hosted join flows

Partners start a join either by redirecting the browser to the hosted page
or by creating a one-time intent server-side. Completing the join issues an
access code that travels back to the partner on the return URL.
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Tuple
from urllib.parse import urlencode
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
import logging

from app.core.errors import AlreadyRedeemed, Expired, FeatureDisabled, IdentityConflict, NotFound, ValidationError
from app.core.jwt import token_manager
from app.core.signing import generate_token, hash_secret
from app.models.integration import IntegrationApp, IntegrationWaitlistIntent
from app.models.user import User, WaitlistMember
from app.services.access_code_service import access_code_service
from app.services.identity_link_service import identity_link_service
from app.services.webhook_service import EVENT_ACCESS_GRANTED, EVENT_WAITLIST_JOINED, webhook_service
from app.utils.urls import append_query_params, normalize_origin
from config import settings

logger = logging.getLogger(__name__)

ACCESS_CODE_PARAM = "fu_access_code"
PUBLIC_APP_ID_PARAM = "fu_public_app_id"
ACCOUNT_EXISTS_MESSAGE = "An account with this email already exists; sign in to continue"


class JoinService:
    INTENT_PREFIX = "fuwi"

    # ------------------------------------------------------------------
    # Return target policy
    # ------------------------------------------------------------------
    @staticmethod
    def _matches_deep_link(candidate: str, deep_link: Optional[str]) -> bool:
        if not deep_link:
            return False
        base = deep_link.rstrip("/")
        if candidate == base or candidate == deep_link:
            return True
        return candidate.startswith(base) and candidate[len(base)] in "/?#"

    @classmethod
    def resolve_return_target(cls, app: IntegrationApp, return_to: Optional[str]) -> str:
        candidate = (return_to or "").strip()
        if not candidate:
            if app.web_redirect_url:
                return app.web_redirect_url
            raise ValidationError("returnTo is required when the integration has no web redirect URL")

        if cls._matches_deep_link(candidate, app.mobile_deep_link_url):
            return candidate

        origin = normalize_origin(candidate)
        if not origin:
            raise ValidationError("returnTo must be an http(s) URL or the configured mobile deep link")

        allowed = set(app.allowed_origins or [])
        web_origin = normalize_origin(app.web_redirect_url)
        if web_origin:
            allowed.add(web_origin)
        if origin not in allowed:
            logger.warning("Rejected returnTo origin %s for app %s", origin, app.public_app_id)
            raise ValidationError("returnTo origin is not allowed for this integration")
        return candidate

    # ------------------------------------------------------------------
    # Embedded start
    # ------------------------------------------------------------------
    @classmethod
    async def start_embedded_waitlist(
        cls,
        *,
        app: IntegrationApp,
        external_user_id: Optional[str],
        email: Optional[str],
        phone: Optional[str],
        return_to: Optional[str],
        db: AsyncSession,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        if not app.embedded_enabled:
            raise FeatureDisabled("Embedded waitlist is not enabled for this integration")

        now = now or datetime.now(timezone.utc)
        target = cls.resolve_return_target(app, return_to)
        token = generate_token(cls.INTENT_PREFIX, 24)
        intent = IntegrationWaitlistIntent(
            integration_app_id=app.integration_app_id,
            token_hash=hash_secret(token),
            external_user_id=external_user_id,
            email=email.lower() if email else None,
            phone=phone,
            return_to=target,
            expires_at=now + timedelta(minutes=settings.INTEGRATION_WAITLIST_INTENT_TTL_MINUTES),
            created_at=now,
        )
        db.add(intent)
        await db.commit()

        continuation_url = (
            f"{settings.PUBLIC_BASE_URL.rstrip('/')}/i/{app.public_app_id}/join?{urlencode({'intent': token})}"
        )
        logger.info("Created embedded join intent %s for app %s", intent.intent_id, app.public_app_id)
        return {"continuation_url": continuation_url, "expires_at": intent.expires_at}

    @staticmethod
    async def _find_intent(
        *, app: IntegrationApp, token: str, db: AsyncSession
    ) -> Optional[IntegrationWaitlistIntent]:
        result = await db.execute(
            select(IntegrationWaitlistIntent).where(
                IntegrationWaitlistIntent.token_hash == hash_secret(token),
                IntegrationWaitlistIntent.integration_app_id == app.integration_app_id,
            )
        )
        return result.scalar_one_or_none()

    @classmethod
    async def _check_intent(
        cls, *, app: IntegrationApp, token: str, db: AsyncSession, now: datetime
    ) -> IntegrationWaitlistIntent:
        intent = await cls._find_intent(app=app, token=token, db=db)
        if not intent:
            raise NotFound("Join intent not found")
        if intent.consumed_at is not None:
            raise AlreadyRedeemed("Join intent has already been used")
        if now > intent.expires_at:
            raise Expired("Join intent has expired")
        return intent

    @staticmethod
    async def _consume_intent(*, intent: IntegrationWaitlistIntent, db: AsyncSession, now: datetime) -> None:
        claim = await db.execute(
            update(IntegrationWaitlistIntent)
            .where(
                IntegrationWaitlistIntent.intent_id == intent.intent_id,
                IntegrationWaitlistIntent.consumed_at.is_(None),
            )
            .values(consumed_at=now)
        )
        if claim.rowcount != 1:
            await db.rollback()
            raise AlreadyRedeemed("Join intent has already been used")

    # ------------------------------------------------------------------
    # Hosted join
    # ------------------------------------------------------------------
    @classmethod
    async def join_context(
        cls,
        *,
        app: IntegrationApp,
        return_to: Optional[str],
        intent_token: Optional[str],
        db: AsyncSession,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        now = now or datetime.now(timezone.utc)
        intent = None
        if intent_token:
            intent = await cls._check_intent(app=app, token=intent_token, db=db, now=now)
        elif not app.redirect_enabled:
            raise FeatureDisabled("Hosted join is not enabled for this integration")

        target = cls.resolve_return_target(app, return_to or (intent.return_to if intent else None))
        return {
            "public_app_id": app.public_app_id,
            "app_name": app.name,
            "return_to": target,
            "embedded": intent is not None,
            "intent": (
                {
                    "external_user_id": intent.external_user_id,
                    "email": intent.email,
                    "phone": intent.phone,
                    "expires_at": intent.expires_at,
                }
                if intent
                else None
            ),
        }

    @staticmethod
    async def _create_user(
        *, email: str, display_name: Optional[str], phone: Optional[str], db: AsyncSession
    ) -> User:
        """New accounts only; an existing email must sign in before joining."""
        email = email.strip().lower()
        existing = await db.execute(select(User.user_id).where(User.email == email))
        if existing.scalar_one_or_none() is not None:
            raise IdentityConflict(ACCOUNT_EXISTS_MESSAGE)

        user = User(email=email, display_name=display_name, phone=phone)
        db.add(user)
        try:
            await db.commit()
        except IntegrityError:
            await db.rollback()
            raise IdentityConflict(ACCOUNT_EXISTS_MESSAGE)
        return user

    @staticmethod
    async def _ensure_membership(*, app_space_id: UUID, user_id: UUID, db: AsyncSession) -> WaitlistMember:
        result = await db.execute(
            select(WaitlistMember).where(
                WaitlistMember.app_space_id == app_space_id,
                WaitlistMember.user_id == user_id,
            )
        )
        member = result.scalar_one_or_none()
        if member:
            return member

        member = WaitlistMember(app_space_id=app_space_id, user_id=user_id, status="pending")
        db.add(member)
        try:
            await db.commit()
        except IntegrityError:
            await db.rollback()
            result = await db.execute(
                select(WaitlistMember).where(
                    WaitlistMember.app_space_id == app_space_id,
                    WaitlistMember.user_id == user_id,
                )
            )
            member = result.scalar_one()
        return member

    @classmethod
    async def complete_join(
        cls,
        *,
        app: IntegrationApp,
        email: Optional[str],
        display_name: Optional[str],
        phone: Optional[str],
        return_to: Optional[str],
        intent_token: Optional[str],
        db: AsyncSession,
        session_user: Optional[User] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """
        Finish a join for the signed-in account, or for a brand-new account

        Returns the redirect URL, the raw access code and, when an account was
        created, a session token for it.
        """
        now = now or datetime.now(timezone.utc)

        intent = None
        if intent_token:
            intent = await cls._check_intent(app=app, token=intent_token, db=db, now=now)
        elif not app.redirect_enabled:
            raise FeatureDisabled("Hosted join is not enabled for this integration")

        target = cls.resolve_return_target(app, return_to or (intent.return_to if intent else None))
        external_user_id = intent.external_user_id if intent else None
        app_space_id = app.app_space_id

        session_token = None
        if session_user is not None:
            user = session_user
        elif email:
            user = await cls._create_user(
                email=email,
                display_name=display_name,
                phone=phone or (intent.phone if intent else None),
                db=db,
            )
            session_token, _ = token_manager.create_session_token(str(user.user_id), now=now)
        else:
            raise ValidationError("email is required to join without a signed-in account")
        user_id = user.user_id
        member = await cls._ensure_membership(app_space_id=app_space_id, user_id=user_id, db=db)

        # A lost insert race rolls the session back, which expires loaded rows
        for row in (app, user, intent):
            if row is not None:
                await db.refresh(row)
        if intent:
            await cls._consume_intent(intent=intent, db=db, now=now)
        raw_code, access_code = await access_code_service.issue(
            integration_app_id=app.integration_app_id,
            user_id=user.user_id,
            app_space_id=app.app_space_id,
            external_user_id=external_user_id,
            db=db,
            now=now,
            commit=False,
        )
        await db.commit()

        redirect_url = append_query_params(
            target,
            {ACCESS_CODE_PARAM: raw_code, PUBLIC_APP_ID_PARAM: app.public_app_id},
        )
        logger.info("Completed join for user %s on app %s", user.user_id, app.public_app_id)

        await webhook_service.dispatch(
            app=app,
            event_type=EVENT_WAITLIST_JOINED,
            data={
                "externalUserId": external_user_id,
                "firstuserUserId": str(user.user_id),
                "email": user.email,
                "membership": {
                    "status": member.status,
                    "badgeTier": member.badge_tier,
                    "appSpaceId": str(app.app_space_id),
                    "joinedAt": member.joined_at.isoformat() if member.joined_at else None,
                },
                "accessCodeExpiresAt": access_code.expires_at.isoformat(),
            },
            db=db,
            now=now,
        )
        return {"redirect_url": redirect_url, "access_code": raw_code, "session_token": session_token}

    # ------------------------------------------------------------------
    # Collaborator hook: membership approval
    # ------------------------------------------------------------------
    @classmethod
    async def approve_member(
        cls,
        *,
        app: IntegrationApp,
        user_id: UUID,
        db: AsyncSession,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        now = now or datetime.now(timezone.utc)
        result = await db.execute(
            select(WaitlistMember).where(
                WaitlistMember.app_space_id == app.app_space_id,
                WaitlistMember.user_id == user_id,
            )
        )
        member = result.scalar_one_or_none()
        if not member:
            raise NotFound("Waitlist member not found")

        if member.status != "approved":
            member.status = "approved"
            member.approved_at = now

        link = await identity_link_service.get_by_user_id(
            integration_app_id=app.integration_app_id, user_id=user_id, db=db
        )
        linked_external_user_id = link.external_user_id if link else None
        raw_code, access_code = await access_code_service.issue(
            integration_app_id=app.integration_app_id,
            user_id=user_id,
            app_space_id=app.app_space_id,
            external_user_id=linked_external_user_id,
            db=db,
            now=now,
            commit=False,
        )
        await db.commit()
        await db.refresh(member)

        access_params = {ACCESS_CODE_PARAM: raw_code, PUBLIC_APP_ID_PARAM: app.public_app_id}
        delivery = await webhook_service.dispatch(
            app=app,
            event_type=EVENT_ACCESS_GRANTED,
            data={
                "externalUserId": linked_external_user_id,
                "firstuserUserId": str(user_id),
                "accessCode": raw_code,
                "accessCodeExpiresAt": access_code.expires_at.isoformat(),
                "browserAccessUrl": (
                    append_query_params(app.web_redirect_url, access_params) if app.web_redirect_url else None
                ),
                "mobileAccessUrl": (
                    append_query_params(app.mobile_deep_link_url, access_params)
                    if app.mobile_deep_link_url
                    else None
                ),
                "membership": {
                    "status": member.status,
                    "badgeTier": member.badge_tier,
                    "appSpaceId": str(app.app_space_id),
                    "approvedAt": member.approved_at.isoformat() if member.approved_at else None,
                },
            },
            db=db,
            now=now,
        )
        logger.info("Approved member %s on app %s", member.member_id, app.public_app_id)
        return {
            "member_id": member.member_id,
            "user_id": member.user_id,
            "status": member.status,
            "approved_at": member.approved_at,
            "webhook_dispatched": delivery is not None,
        }


join_service = JoinService()
