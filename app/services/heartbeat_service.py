from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
import logging

from app.core.errors import ValidationError
from app.models.integration import IntegrationApp, IntegrationIdentityLink, IntegrationUsageSession
from app.models.user import User, WaitlistMember
from app.services.identity_link_service import identity_link_service
from app.utils.clock import seconds_between
from config import settings

logger = logging.getLogger(__name__)

PRESENCE_STATUSES = ("live", "idle", "offline")
MAX_PLATFORM_LENGTH = 32


class HeartbeatService:
    @staticmethod
    def normalize_platform(client_platform: Optional[str]) -> str:
        value = (client_platform or "").strip()[:MAX_PLATFORM_LENGTH]
        return value or "web"

    @staticmethod
    def stale_cutoff(now: datetime) -> datetime:
        return now - timedelta(seconds=settings.INTEGRATION_HEARTBEAT_TIMEOUT_SECONDS)

    @classmethod
    def is_stale(cls, session: IntegrationUsageSession, now: datetime) -> bool:
        return session.last_seen_at < cls.stale_cutoff(now)

    @staticmethod
    def _close(session: IntegrationUsageSession, ended_at: datetime) -> None:
        session.ended_at = ended_at
        session.duration_seconds = seconds_between(session.started_at, ended_at)

    @staticmethod
    async def membership_status(*, app: IntegrationApp, user_id: UUID, db: AsyncSession) -> Optional[str]:
        result = await db.execute(
            select(WaitlistMember.status).where(
                WaitlistMember.app_space_id == app.app_space_id,
                WaitlistMember.user_id == user_id,
            )
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def current_session(
        *, integration_app_id: UUID, user_id: UUID, db: AsyncSession
    ) -> Optional[IntegrationUsageSession]:
        result = await db.execute(
            select(IntegrationUsageSession)
            .where(
                IntegrationUsageSession.integration_app_id == integration_app_id,
                IntegrationUsageSession.user_id == user_id,
                IntegrationUsageSession.ended_at.is_(None),
            )
            .order_by(IntegrationUsageSession.started_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    @classmethod
    async def record_heartbeat(
        cls,
        *,
        app: IntegrationApp,
        external_user_id: str,
        status: str,
        client_platform: Optional[str],
        db: AsyncSession,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        if status not in PRESENCE_STATUSES:
            raise ValidationError(f"status must be one of: {', '.join(PRESENCE_STATUSES)}")

        now = now or datetime.now(timezone.utc)
        link = await identity_link_service.require_link(
            integration_app_id=app.integration_app_id,
            external_user_id=external_user_id,
            db=db,
        )
        membership_status = await cls.membership_status(app=app, user_id=link.user_id, db=db)
        platform = cls.normalize_platform(client_platform)

        session = await cls.current_session(
            integration_app_id=app.integration_app_id,
            user_id=link.user_id,
            db=db,
        )
        if session and cls.is_stale(session, now):
            # The client went away without saying so; it ended when last seen
            cls._close(session, session.last_seen_at)
            session = None

        if status == "offline":
            if session:
                session.last_seen_at = now
                cls._close(session, now)
        elif session:
            session.last_seen_at = now
            session.client_platform = platform
            session.membership_status = membership_status
        else:
            db.add(
                IntegrationUsageSession(
                    integration_app_id=app.integration_app_id,
                    user_id=link.user_id,
                    client_platform=platform,
                    membership_status=membership_status,
                    started_at=now,
                    last_seen_at=now,
                )
            )

        await db.commit()
        return {"membership_status": membership_status}

    @classmethod
    async def sweep_stale_sessions(cls, *, db: AsyncSession, now: Optional[datetime] = None) -> Dict[str, int]:
        """Persist the closure of sessions whose clients stopped pinging."""
        now = now or datetime.now(timezone.utc)
        result = await db.execute(
            select(IntegrationUsageSession).where(
                IntegrationUsageSession.ended_at.is_(None),
                IntegrationUsageSession.last_seen_at < cls.stale_cutoff(now),
            )
        )
        closed = 0
        for session in result.scalars().all():
            claim = await db.execute(
                update(IntegrationUsageSession)
                .where(
                    IntegrationUsageSession.session_id == session.session_id,
                    IntegrationUsageSession.ended_at.is_(None),
                    IntegrationUsageSession.last_seen_at == session.last_seen_at,
                )
                .values(
                    ended_at=session.last_seen_at,
                    duration_seconds=seconds_between(session.started_at, session.last_seen_at),
                )
                .execution_options(synchronize_session=False)
            )
            closed += claim.rowcount or 0
        await db.commit()

        if closed:
            logger.info("Closed %s stale integration usage sessions", closed)
        return {"closed_sessions": closed}

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------
    @classmethod
    def _effective_minutes(cls, session: IntegrationUsageSession, now: datetime) -> float:
        if session.ended_at is not None:
            seconds = session.duration_seconds
            if seconds is None:
                seconds = seconds_between(session.started_at, session.ended_at)
        elif cls.is_stale(session, now):
            seconds = seconds_between(session.started_at, session.last_seen_at)
        else:
            seconds = seconds_between(session.started_at, now)
        return seconds / 60.0

    @classmethod
    async def usage_summary(
        cls, *, integration_app_id: UUID, db: AsyncSession, now: Optional[datetime] = None
    ) -> Dict[str, Any]:
        now = now or datetime.now(timezone.utc)
        result = await db.execute(
            select(IntegrationUsageSession).where(IntegrationUsageSession.integration_app_id == integration_app_id)
        )
        sessions = list(result.scalars().all())
        total_minutes = sum(cls._effective_minutes(session, now) for session in sessions)
        average = total_minutes / len(sessions) if sessions else 0.0
        return {
            "sessions": len(sessions),
            "total_minutes": round(total_minutes, 2),
            "average_minutes": round(average, 2),
        }

    @classmethod
    async def engagement_candidates(
        cls,
        *,
        app: IntegrationApp,
        db: AsyncSession,
        membership_status: Optional[str] = None,
        limit: int = 50,
        now: Optional[datetime] = None,
    ) -> List[Dict[str, Any]]:
        """Linked members ranked by time spent, then session count, then recency."""
        now = now or datetime.now(timezone.utc)

        query = (
            select(IntegrationIdentityLink, User, WaitlistMember.status)
            .join(User, User.user_id == IntegrationIdentityLink.user_id)
            .outerjoin(
                WaitlistMember,
                (WaitlistMember.user_id == IntegrationIdentityLink.user_id)
                & (WaitlistMember.app_space_id == app.app_space_id),
            )
            .where(IntegrationIdentityLink.integration_app_id == app.integration_app_id)
        )
        if membership_status:
            query = query.where(WaitlistMember.status == membership_status)
        rows = (await db.execute(query)).all()
        if not rows:
            return []

        session_result = await db.execute(
            select(IntegrationUsageSession).where(
                IntegrationUsageSession.integration_app_id == app.integration_app_id,
                IntegrationUsageSession.user_id.in_([link.user_id for link, _, _ in rows]),
            )
        )
        stats: Dict[UUID, Dict[str, Any]] = {}
        for session in session_result.scalars().all():
            entry = stats.setdefault(session.user_id, {"sessions": 0, "minutes": 0.0, "last_seen_at": None})
            entry["sessions"] += 1
            entry["minutes"] += cls._effective_minutes(session, now)
            if entry["last_seen_at"] is None or session.last_seen_at > entry["last_seen_at"]:
                entry["last_seen_at"] = session.last_seen_at

        candidates = []
        for link, user, status in rows:
            entry = stats.get(link.user_id, {"sessions": 0, "minutes": 0.0, "last_seen_at": None})
            candidates.append(
                {
                    "user_id": user.user_id,
                    "external_user_id": link.external_user_id,
                    "email": user.email,
                    "display_name": user.display_name,
                    "membership_status": status,
                    "sessions": entry["sessions"],
                    "total_minutes": round(entry["minutes"], 2),
                    "last_seen_at": entry["last_seen_at"],
                }
            )

        epoch = datetime.min.replace(tzinfo=timezone.utc)
        candidates.sort(
            key=lambda item: (item["total_minutes"], item["sessions"], item["last_seen_at"] or epoch),
            reverse=True,
        )
        return candidates[:limit]


heartbeat_service = HeartbeatService()
