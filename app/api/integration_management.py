from __future__ import annotations

import secrets
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Header, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession
import logging

from app.core.database import get_db
from app.core.errors import ValidationError
from app.dependencies.integration_auth import ensure_integration_enabled
from app.schemas.integration import (
    ApiKeyCreateRequest,
    ApiKeyCreateResponse,
    ApiKeyListResponse,
    ApiKeyResponse,
    ApiKeyRotateRequest,
    EngagementCandidate,
    EngagementResponse,
    IntegrationAppCreateRequest,
    IntegrationAppCreateResponse,
    IntegrationAppResponse,
    IntegrationAppUpdateRequest,
    IntegrationHealthResponse,
    MemberApproveResponse,
    MembershipStatus,
    UsageSummaryResponse,
    WebhookDeliveryListResponse,
    WebhookDeliveryResponse,
    WebhookSecretResponse,
    WebhookTestResponse,
)
from app.services.api_key_service import api_key_service
from app.services.heartbeat_service import heartbeat_service
from app.services.integration_app_service import integration_app_service
from app.services.join_service import join_service
from app.services.webhook_service import webhook_service
from config import settings

logger = logging.getLogger(__name__)


def require_admin_token(x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token")) -> None:
    expected = settings.INTEGRATION_ADMIN_TOKEN
    if not expected or not x_admin_token or not secrets.compare_digest(x_admin_token, expected):
        logger.warning("Rejected integration management request with invalid admin token")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid admin token")


router = APIRouter(
    prefix="/integrations",
    tags=["Integration Management"],
    dependencies=[Depends(ensure_integration_enabled), Depends(require_admin_token)],
)


@router.post("/apps", response_model=IntegrationAppCreateResponse, status_code=status.HTTP_201_CREATED)
async def create_integration_app(
    payload: IntegrationAppCreateRequest,
    db: AsyncSession = Depends(get_db),
):
    app, secret = await integration_app_service.create_app(data=payload, db=db)
    return IntegrationAppCreateResponse(app=IntegrationAppResponse.model_validate(app), webhook_secret=secret)


@router.get("/apps/{integration_app_id}", response_model=IntegrationAppResponse)
async def get_integration_app(integration_app_id: UUID, db: AsyncSession = Depends(get_db)):
    app = await integration_app_service.get_app(integration_app_id=integration_app_id, db=db)
    return IntegrationAppResponse.model_validate(app)


@router.patch("/apps/{integration_app_id}", response_model=IntegrationAppResponse)
async def update_integration_app(
    integration_app_id: UUID,
    payload: IntegrationAppUpdateRequest,
    db: AsyncSession = Depends(get_db),
):
    app = await integration_app_service.get_app(integration_app_id=integration_app_id, db=db)
    app = await integration_app_service.update_app(app=app, data=payload, db=db)
    return IntegrationAppResponse.model_validate(app)


@router.get("/apps/{integration_app_id}/health", response_model=IntegrationHealthResponse)
async def get_integration_health(integration_app_id: UUID, db: AsyncSession = Depends(get_db)):
    app = await integration_app_service.get_app(integration_app_id=integration_app_id, db=db)
    return IntegrationHealthResponse(**await integration_app_service.health(app=app, db=db))


@router.get("/apps/{integration_app_id}/api-keys", response_model=ApiKeyListResponse)
async def list_api_keys(integration_app_id: UUID, db: AsyncSession = Depends(get_db)):
    app = await integration_app_service.get_app(integration_app_id=integration_app_id, db=db)
    keys = await api_key_service.list_keys(integration_app_id=app.integration_app_id, db=db)
    return ApiKeyListResponse(total=len(keys), keys=[ApiKeyResponse.model_validate(key) for key in keys])


@router.post(
    "/apps/{integration_app_id}/api-keys",
    response_model=ApiKeyCreateResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_api_key(
    integration_app_id: UUID,
    payload: ApiKeyCreateRequest,
    db: AsyncSession = Depends(get_db),
):
    app = await integration_app_service.get_app(integration_app_id=integration_app_id, db=db)
    plain_key, key = await api_key_service.create_key(
        integration_app_id=app.integration_app_id, name=payload.name, db=db
    )
    return ApiKeyCreateResponse(api_key=plain_key, key=ApiKeyResponse.model_validate(key))


@router.post("/apps/{integration_app_id}/api-keys/rotate", response_model=ApiKeyCreateResponse)
async def rotate_api_key(
    integration_app_id: UUID,
    payload: ApiKeyRotateRequest,
    db: AsyncSession = Depends(get_db),
):
    app = await integration_app_service.get_app(integration_app_id=integration_app_id, db=db)
    plain_key, key, revoked = await api_key_service.rotate_key(
        integration_app_id=app.integration_app_id,
        name=payload.name,
        revoke_existing=payload.revoke_existing,
        db=db,
    )
    return ApiKeyCreateResponse(
        api_key=plain_key,
        key=ApiKeyResponse.model_validate(key),
        revoked_key_ids=revoked,
    )


@router.delete("/apps/{integration_app_id}/api-keys/{key_id}", response_model=ApiKeyResponse)
async def revoke_api_key(integration_app_id: UUID, key_id: str, db: AsyncSession = Depends(get_db)):
    app = await integration_app_service.get_app(integration_app_id=integration_app_id, db=db)
    key = await api_key_service.revoke_key(integration_app_id=app.integration_app_id, key_id=key_id, db=db)
    return ApiKeyResponse.model_validate(key)


@router.post("/apps/{integration_app_id}/webhook-secret/rotate", response_model=WebhookSecretResponse)
async def rotate_webhook_secret(integration_app_id: UUID, db: AsyncSession = Depends(get_db)):
    app = await integration_app_service.get_app(integration_app_id=integration_app_id, db=db)
    secret = await webhook_service.rotate_webhook_secret(app=app, db=db)
    return WebhookSecretResponse(webhook_secret=secret, last_four=secret[-4:])


@router.post("/apps/{integration_app_id}/webhook/test", response_model=WebhookTestResponse)
async def send_test_webhook(integration_app_id: UUID, db: AsyncSession = Depends(get_db)):
    app = await integration_app_service.get_app(integration_app_id=integration_app_id, db=db)
    delivery = await webhook_service.send_test_event(app=app, db=db)
    if delivery is None:
        raise ValidationError("Webhook URL is not configured for this integration")
    return WebhookTestResponse(delivery_id=delivery.delivery_id, event_id=delivery.event_id, status=delivery.status)


@router.get("/apps/{integration_app_id}/webhook-deliveries", response_model=WebhookDeliveryListResponse)
async def list_webhook_deliveries(
    integration_app_id: UUID,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: AsyncSession = Depends(get_db),
):
    app = await integration_app_service.get_app(integration_app_id=integration_app_id, db=db)
    deliveries, total = await webhook_service.list_deliveries(
        integration_app_id=app.integration_app_id, db=db, limit=limit, offset=offset
    )
    return WebhookDeliveryListResponse(
        total=total,
        deliveries=[WebhookDeliveryResponse.model_validate(item) for item in deliveries],
    )


@router.get("/apps/{integration_app_id}/usage", response_model=UsageSummaryResponse)
async def get_usage_summary(integration_app_id: UUID, db: AsyncSession = Depends(get_db)):
    app = await integration_app_service.get_app(integration_app_id=integration_app_id, db=db)
    return UsageSummaryResponse(
        **await heartbeat_service.usage_summary(integration_app_id=app.integration_app_id, db=db)
    )


@router.get("/apps/{integration_app_id}/engagement", response_model=EngagementResponse)
async def get_engagement_candidates(
    integration_app_id: UUID,
    membership_status: Optional[MembershipStatus] = Query(default=None, alias="status"),
    limit: int = Query(default=50, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
):
    app = await integration_app_service.get_app(integration_app_id=integration_app_id, db=db)
    candidates = await heartbeat_service.engagement_candidates(
        app=app, db=db, membership_status=membership_status, limit=limit
    )
    return EngagementResponse(
        total=len(candidates),
        candidates=[EngagementCandidate(**item) for item in candidates],
    )


@router.post("/apps/{integration_app_id}/members/{user_id}/approve", response_model=MemberApproveResponse)
async def approve_member(integration_app_id: UUID, user_id: UUID, db: AsyncSession = Depends(get_db)):
    app = await integration_app_service.get_app(integration_app_id=integration_app_id, db=db)
    result = await join_service.approve_member(app=app, user_id=user_id, db=db)
    return MemberApproveResponse(**result)
