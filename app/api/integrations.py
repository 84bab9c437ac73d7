from __future__ import annotations

from fastapi import APIRouter, Depends, Path
from sqlalchemy.ext.asyncio import AsyncSession
import logging

from app.core.database import get_db
from app.dependencies.integration_auth import IntegrationContext, ensure_integration_enabled, require_integration
from app.schemas.integration import (
    AccessExchangeRequest,
    AccessExchangeResponse,
    HeartbeatRequest,
    HeartbeatResponse,
    PlanTierRequest,
    PlanTierResponse,
    WaitlistStartRequest,
    WaitlistStartResponse,
    WidgetTokenRequest,
    WidgetTokenResponse,
)
from app.services.access_code_service import access_code_service
from app.services.chat_widget_service import chat_widget_service
from app.services.heartbeat_service import heartbeat_service
from app.services.identity_link_service import identity_link_service
from app.services.join_service import join_service

logger = logging.getLogger(__name__)

router = APIRouter(
    tags=["Integration API"],
    dependencies=[Depends(ensure_integration_enabled)],
)


@router.post("/waitlist/start", response_model=WaitlistStartResponse)
async def start_waitlist(
    payload: WaitlistStartRequest,
    ctx: IntegrationContext = Depends(require_integration),
    db: AsyncSession = Depends(get_db),
):
    result = await join_service.start_embedded_waitlist(
        app=ctx.app,
        external_user_id=payload.external_user_id,
        email=payload.email,
        phone=payload.phone,
        return_to=payload.return_to,
        db=db,
    )
    return WaitlistStartResponse(**result)


@router.post("/access/exchange", response_model=AccessExchangeResponse)
async def exchange_access_code(
    payload: AccessExchangeRequest,
    ctx: IntegrationContext = Depends(require_integration),
    db: AsyncSession = Depends(get_db),
):
    result = await access_code_service.redeem(
        app=ctx.app,
        code=payload.code,
        external_user_id=payload.external_user_id,
        db=db,
    )
    return AccessExchangeResponse(**result)


@router.post("/usage/heartbeat", response_model=HeartbeatResponse)
async def usage_heartbeat(
    payload: HeartbeatRequest,
    ctx: IntegrationContext = Depends(require_integration),
    db: AsyncSession = Depends(get_db),
):
    result = await heartbeat_service.record_heartbeat(
        app=ctx.app,
        external_user_id=payload.external_user_id,
        status=payload.status,
        client_platform=payload.client_platform,
        db=db,
    )
    return HeartbeatResponse(**result)


@router.post("/users/{external_user_id}/plan", response_model=PlanTierResponse)
async def set_plan_tier(
    payload: PlanTierRequest,
    external_user_id: str = Path(..., min_length=1, max_length=255),
    ctx: IntegrationContext = Depends(require_integration),
    db: AsyncSession = Depends(get_db),
):
    link = await identity_link_service.set_plan_tier(
        integration_app_id=ctx.app.integration_app_id,
        external_user_id=external_user_id,
        tier=payload.plan_tier,
        db=db,
    )
    return PlanTierResponse(current_plan_tier=link.current_plan_tier)


@router.post("/chat/widget-token", response_model=WidgetTokenResponse)
async def create_widget_token(
    payload: WidgetTokenRequest,
    ctx: IntegrationContext = Depends(require_integration),
    db: AsyncSession = Depends(get_db),
):
    result = await chat_widget_service.create_widget_token(
        app=ctx.app,
        external_user_id=payload.external_user_id,
        db=db,
    )
    return WidgetTokenResponse(**result)
