"""
Browser-facing hosted join flow

The page itself belongs to the web client; these endpoints supply its
context and complete the join with a redirect back to the partner.
An email that already has an account must arrive with a platform session.
"""
from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import RedirectResponse
from sqlalchemy.ext.asyncio import AsyncSession
import logging

from app.core.database import get_db
from app.dependencies.integration_auth import ensure_integration_enabled
from app.dependencies.platform_session import SESSION_COOKIE, get_session_user
from app.dependencies.rate_limit import check_rate_limit
from app.models.user import User
from app.schemas.integration import HostedJoinRequest, JoinContextResponse
from app.services.integration_app_service import integration_app_service
from app.services.join_service import join_service
from config import settings

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/i",
    tags=["Hosted Join"],
    dependencies=[Depends(ensure_integration_enabled), Depends(check_rate_limit)],
)


@router.get("/{public_app_id}/join", response_model=JoinContextResponse)
async def get_join_context(
    public_app_id: str,
    return_to: Optional[str] = Query(default=None, alias="returnTo", max_length=2048),
    intent: Optional[str] = Query(default=None, max_length=256),
    db: AsyncSession = Depends(get_db),
):
    app = await integration_app_service.get_by_public_app_id(public_app_id=public_app_id, db=db)
    context = await join_service.join_context(app=app, return_to=return_to, intent_token=intent, db=db)
    return JoinContextResponse(**context)


@router.post("/{public_app_id}/join")
async def complete_join(
    public_app_id: str,
    payload: HostedJoinRequest,
    session_user: Optional[User] = Depends(get_session_user),
    db: AsyncSession = Depends(get_db),
):
    app = await integration_app_service.get_by_public_app_id(public_app_id=public_app_id, db=db)
    result = await join_service.complete_join(
        app=app,
        email=payload.email,
        display_name=payload.display_name,
        phone=payload.phone,
        return_to=payload.return_to,
        intent_token=payload.intent,
        session_user=session_user,
        db=db,
    )
    response = RedirectResponse(url=result["redirect_url"], status_code=status.HTTP_303_SEE_OTHER)
    if result["session_token"]:
        response.set_cookie(
            SESSION_COOKIE,
            result["session_token"],
            max_age=settings.PLATFORM_SESSION_TTL_MINUTES * 60,
            httponly=True,
            secure=settings.is_production,
            samesite="lax",
        )
    return response
