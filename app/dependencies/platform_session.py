"""
Browser session for platform accounts
Sign-in belongs to the platform; the hosted join only reads the session it leaves behind.
"""
from typing import Optional
from uuid import UUID

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession
import logging

from app.core.database import get_db
from app.core.errors import Unauthorized
from app.core.jwt import token_manager
from app.models.user import User

logger = logging.getLogger(__name__)

SESSION_COOKIE = "fu_session"


def _session_token(request: Request) -> Optional[str]:
    token = request.cookies.get(SESSION_COOKIE)
    if token:
        return token
    scheme, _, value = (request.headers.get("Authorization") or "").partition(" ")
    if scheme.lower() == "bearer" and value.strip():
        return value.strip()
    return None


async def get_session_user(request: Request, db: AsyncSession = Depends(get_db)) -> Optional[User]:
    """Signed-in account, or None for an anonymous visitor; a bad token is rejected."""
    token = _session_token(request)
    if not token:
        return None

    claims = token_manager.decode_session_token(token)
    try:
        user_id = UUID(str(claims.get("sub")))
    except ValueError:
        raise Unauthorized("Could not validate session token")

    user = await db.get(User, user_id)
    if not user:
        logger.warning("Session token names missing user %s", user_id)
        raise Unauthorized("Session account no longer exists")
    return user
