"""
FirstUser integration service entry point

Run the API with `python main.py` (or uvicorn main:app) and the delivery
worker with `celery -A app.celery_config:celery_app worker --beat`.
"""
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from starlette.exceptions import HTTPException as StarletteHTTPException
import redis.asyncio as aioredis
import logging

from config import settings
from app.core.errors import IntegrationError
from app.middleware import SecurityHeadersMiddleware

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Rate-limit windows and API key usage counters; None when Redis is unreachable
redis_client: Optional[aioredis.Redis] = None


async def _connect_redis() -> Optional[aioredis.Redis]:
    client = aioredis.from_url(
        settings.REDIS_URL,
        encoding="utf-8",
        decode_responses=True,
        max_connections=settings.REDIS_MAX_CONNECTIONS
    )
    try:
        await client.ping()
    except Exception as e:
        logger.warning(f"Redis unavailable ({e}); rate limiting and usage counters are off")
        await client.aclose()
        return None
    logger.info("Connected to Redis")
    return client


@asynccontextmanager
async def lifespan(app: FastAPI):
    global redis_client

    logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION} ({settings.ENVIRONMENT})")
    for issue in settings.validate_configuration():
        logger.warning(f"Configuration issue: {issue}")

    redis_client = await _connect_redis()

    if not settings.ENABLE_INTEGRATION_API:
        logger.info("Integration API is DISABLED (ENABLE_INTEGRATION_API=false)")
    if settings.ENABLE_INTEGRATION_DELIVERY:
        logger.info("Webhooks are queued to Celery; make sure a worker with --beat is running")
    else:
        logger.info("Webhook delivery is DISABLED (ENABLE_INTEGRATION_DELIVERY=false)")
    logger.info(f"Rate limiting {'active' if redis_client and settings.RATE_LIMIT_ENABLED else 'off'}")

    yield

    logger.info("Shutting down")
    if redis_client:
        await redis_client.aclose()
        redis_client = None

    from app.core.database import close_db
    await close_db()


app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Partner integration API: hosted waitlist join, access code exchange, presence and webhooks",
    docs_url="/docs" if settings.DEBUG else None,
    redoc_url="/redoc" if settings.DEBUG else None,
    lifespan=lifespan
)

# Added last so it wraps everything and answers preflights first
app.add_middleware(SecurityHeadersMiddleware)
if settings.CORS_ENABLED:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_methods=settings.CORS_ALLOW_METHODS,
        allow_headers=settings.CORS_ALLOW_HEADERS,
        allow_credentials=settings.CORS_ALLOW_CREDENTIALS,
        max_age=settings.CORS_MAX_AGE
    )


def _error_response(status_code: int, message: str, code: str, **extra) -> JSONResponse:
    content = {"message": message, "code": code, "status_code": status_code}
    content.update(extra)
    return JSONResponse(status_code=status_code, content=content)


@app.exception_handler(IntegrationError)
async def integration_exception_handler(request: Request, exc: IntegrationError):
    logger.info(f"{exc.code}: {exc.message} - {request.method} {request.url.path}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    logger.warning(f"HTTP {exc.status_code}: {exc.detail} - {request.method} {request.url.path}")
    response = _error_response(exc.status_code, str(exc.detail), "http_error")
    for name, value in (exc.headers or {}).items():
        response.headers[name] = value
    return response


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    logger.warning(f"Validation error on {request.url.path}: {exc.errors()}")
    return _error_response(
        status.HTTP_422_UNPROCESSABLE_ENTITY,
        "Validation error",
        "validation_error",
        details=jsonable_encoder(exc.errors()),
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled error on {request.method} {request.url.path}: {exc}", exc_info=True)
    message = "Internal server error" if settings.is_production else str(exc)
    return _error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, message, "internal_error")


from app.api import include_routers

api_router, integration_router, public_router = include_routers()
app.include_router(api_router, prefix=settings.API_V1_PREFIX)
app.include_router(integration_router, prefix=settings.INTEGRATION_API_PREFIX)
app.include_router(public_router)


@app.get("/")
async def root():
    return {
        "message": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "endpoints": {
            "integration": settings.INTEGRATION_API_PREFIX,
            "management": f"{settings.API_V1_PREFIX}/integrations",
            "hosted_join": "/i/{publicAppId}/join",
            "chat_widget": "/chat/widget",
        }
    }


@app.get("/health")
async def health_check():
    return {
        "status": "healthy",
        "version": settings.APP_VERSION,
        "redis": "connected" if redis_client else "disconnected",
    }


@app.get("/api/v1/status")
async def api_status():
    """Dependency status; the database is checked on every call"""
    database = "connected"
    try:
        from app.core.database import engine
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        database = "disconnected"

    return {
        "api": "operational" if database == "connected" else "degraded",
        "version": settings.APP_VERSION,
        "environment": settings.ENVIRONMENT,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "services": {
            "database": database,
            "redis": "connected" if redis_client else "disconnected",
            "integration_api": "enabled" if settings.ENABLE_INTEGRATION_API else "disabled",
            "webhook_delivery": "enabled" if settings.ENABLE_INTEGRATION_DELIVERY else "disabled",
        },
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.DEBUG,
        log_level=settings.LOG_LEVEL.lower()
    )
