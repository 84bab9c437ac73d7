"""
Hosted chat widget entry

The widget page is served by the web client inside the partner's iframe;
this endpoint checks its token and names the account it acts for.
"""
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import get_db
from app.dependencies.integration_auth import ensure_integration_enabled
from app.dependencies.rate_limit import check_rate_limit
from app.schemas.integration import WidgetContextResponse
from app.services.chat_widget_service import chat_widget_service

router = APIRouter(
    prefix="/chat",
    tags=["Chat Widget"],
    dependencies=[Depends(ensure_integration_enabled), Depends(check_rate_limit)],
)


@router.get("/widget", response_model=WidgetContextResponse)
async def get_widget_context(
    token: str = Query(..., min_length=1, max_length=4096),
    app: str = Query(..., min_length=1, max_length=64),
    db: AsyncSession = Depends(get_db),
):
    context = await chat_widget_service.widget_context(token=token, public_app_id=app, db=db)
    return WidgetContextResponse(**context)
