from fastapi import APIRouter

api_router = APIRouter()
integration_router = APIRouter()
public_router = APIRouter()


def include_routers():
    """Build the three router groups; main mounts each under its own prefix."""
    from app.api.integration_management import router as management_router
    from app.api.integrations import router as partner_router
    from app.api.hosted_join import router as hosted_join_router
    from app.api.chat_widget import router as chat_widget_router

    api_router.include_router(management_router)
    integration_router.include_router(partner_router)
    public_router.include_router(hosted_join_router)
    public_router.include_router(chat_widget_router)

    return api_router, integration_router, public_router
