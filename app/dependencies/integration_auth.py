"""
Partner API authentication
Resolves `Authorization: Bearer <keyId>.<secret>` to the owning integration app
"""
from dataclasses import dataclass

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession
import logging

from app.core.database import get_db
from app.dependencies.rate_limit import check_integration_rate_limit
from app.models.integration import IntegrationApp
from app.services.api_key_service import AuthenticatedIntegration, api_key_service
from app.core.errors import Unauthorized
from config import settings

logger = logging.getLogger(__name__)


@dataclass
class IntegrationContext:
    auth: AuthenticatedIntegration
    app: IntegrationApp


def ensure_integration_enabled() -> None:
    if not settings.ENABLE_INTEGRATION_API:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Integration API is disabled")


async def require_integration(request: Request, db: AsyncSession = Depends(get_db)) -> IntegrationContext:
    """Authenticate on every call; revocation takes effect immediately."""
    auth = await api_key_service.authenticate(authorization=request.headers.get("Authorization"), db=db)

    await check_integration_rate_limit(identifier=f"integration-key:{auth.key_id}")

    app = await db.get(IntegrationApp, auth.integration_app_id)
    if not app:
        raise Unauthorized("Integration app no longer exists")

    await api_key_service.increment_usage(auth.api_key_id)
    request.state.integration_app_id = str(auth.integration_app_id)
    return IntegrationContext(auth=auth, app=app)
