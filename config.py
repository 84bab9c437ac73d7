"""
Settings for the FirstUser integration service

Values come from the environment or .env. Anything that signs, encrypts or
authenticates must be set explicitly in production.
"""
import base64
import hashlib
import json
import secrets
import warnings
from functools import lru_cache
from typing import List, Optional
from urllib.parse import quote_plus

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _split_csv(value) -> List[str]:
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    return value


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    APP_NAME: str = "FirstUser Integration API"
    APP_VERSION: str = "1.0.0"
    ENVIRONMENT: str = Field(default="development", pattern="^(development|testing|staging|production)$")
    DEBUG: bool = False
    LOG_LEVEL: str = Field(default="INFO", pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")

    API_V1_PREFIX: str = "/api/v1"
    INTEGRATION_API_PREFIX: str = "/api/integration/v1"
    PUBLIC_BASE_URL: str = Field(
        default="http://localhost:8000",
        description="Public origin used to build continuation and widget URLs"
    )

    # ========================================================================
    # STORAGE
    # ========================================================================
    DB_URL: Optional[str] = Field(
        default=None,
        description="Full async database URL; overrides the DB_* parts when set"
    )
    DB_USER: str = "postgres"
    DB_PASSWORD: str = ""
    DB_HOST: str = "localhost"
    DB_PORT: int = 5432
    DB_NAME: str = "firstuser"

    REDIS_URL: str = "redis://localhost:6379/0"
    REDIS_MAX_CONNECTIONS: int = 50
    REDIS_KEY_PREFIX: str = "firstuser"

    CELERY_BROKER_URL: str = "redis://localhost:6379/1"
    CELERY_RESULT_BACKEND: str = "redis://localhost:6379/2"

    # ========================================================================
    # SECRETS
    # ========================================================================
    SECRET_KEY: str = Field(default="", description="Signs widget tokens under HS256 (min 32 chars)")
    JWT_ALGORITHM: str = Field(default="HS256", pattern="^(HS256|RS256)$")
    JWT_PRIVATE_KEY: Optional[str] = None
    JWT_PUBLIC_KEY: Optional[str] = None

    INTEGRATION_ADMIN_TOKEN: str = Field(
        default="",
        description="Token required in X-Admin-Token for integration management"
    )
    INTEGRATION_ENCRYPTION_KEY: str = Field(
        default="",
        description="Fernet key used to encrypt webhook signing secrets at rest"
    )
    INTEGRATION_ENCRYPTION_KEY_PREVIOUS: Optional[str] = Field(
        default=None,
        description="Previous Fernet key still accepted for decryption during rotation"
    )

    # ========================================================================
    # INTEGRATION BEHAVIOUR
    # ========================================================================
    ENABLE_INTEGRATION_API: bool = True
    ENABLE_INTEGRATION_DELIVERY: bool = Field(
        default=True,
        description="Deliver webhook notifications to partner backends"
    )
    INTEGRATION_ACCESS_CODE_TTL_MINUTES: int = Field(default=10, ge=1, le=60)
    INTEGRATION_WAITLIST_INTENT_TTL_MINUTES: int = Field(default=30, ge=1, le=1440)
    INTEGRATION_HEARTBEAT_TIMEOUT_SECONDS: int = Field(
        default=45,
        ge=15,
        description="Sessions without a heartbeat for this long are treated as ended"
    )
    INTEGRATION_WIDGET_TOKEN_TTL_SECONDS: int = Field(default=300, ge=30, le=3600)
    PLATFORM_SESSION_TTL_MINUTES: int = Field(
        default=1440,
        ge=5,
        description="Lifetime of the browser session set when the hosted join creates an account"
    )

    INTEGRATION_WEBHOOK_TIMEOUT_SECONDS: float = 10.0
    INTEGRATION_WEBHOOK_MAX_ATTEMPTS: int = Field(default=5, ge=1, le=10)
    INTEGRATION_WEBHOOK_BACKOFF_MINUTES: List[int] = Field(default=[1, 5, 15, 60, 240])
    INTEGRATION_WEBHOOK_PENDING_GRACE_SECONDS: int = 120
    INTEGRATION_WEBHOOK_RETRY_BATCH_SIZE: int = 100

    # ========================================================================
    # HTTP SURFACE
    # ========================================================================
    RATE_LIMIT_ENABLED: bool = True
    INTEGRATION_RATE_LIMIT_PER_MINUTE: int = 600
    HOSTED_JOIN_RATE_LIMIT_PER_MINUTE: int = 60
    TRUST_PROXY_HEADERS: bool = Field(
        default=False,
        description="Read the client IP from X-Forwarded-For (only behind a trusted proxy)"
    )

    CORS_ENABLED: bool = True
    CORS_ORIGINS: List[str] = Field(default=["http://localhost:3000"])
    CORS_ALLOW_CREDENTIALS: bool = False
    CORS_ALLOW_METHODS: List[str] = Field(default=["GET", "POST", "PATCH", "DELETE", "OPTIONS"])
    CORS_ALLOW_HEADERS: List[str] = Field(default=["Authorization", "Content-Type", "X-Admin-Token"])
    CORS_MAX_AGE: int = 600

    ENABLE_HSTS: bool = True
    HSTS_MAX_AGE: int = 31536000

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------
    @field_validator("SECRET_KEY")
    @classmethod
    def validate_secret_key(cls, v: str) -> str:
        if not v:
            warnings.warn(
                "SECRET_KEY not set - using a per-process key; widget tokens will not survive restarts",
                UserWarning
            )
            return secrets.token_urlsafe(32)
        if len(v) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters long")
        return v

    @field_validator("CORS_ORIGINS", "CORS_ALLOW_METHODS", "CORS_ALLOW_HEADERS", mode="before")
    @classmethod
    def parse_csv_lists(cls, v) -> List[str]:
        return _split_csv(v)

    @field_validator("INTEGRATION_WEBHOOK_BACKOFF_MINUTES", mode="before")
    @classmethod
    def parse_backoff_minutes(cls, v) -> List[int]:
        """Accepts a JSON list or a comma-separated string"""
        if isinstance(v, str):
            try:
                return [int(item) for item in json.loads(v)]
            except json.JSONDecodeError:
                return [int(item) for item in _split_csv(v)]
        return v

    @field_validator("LOG_LEVEL", mode="before")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        return str(v).upper()

    # ------------------------------------------------------------------
    # Derived values
    # ------------------------------------------------------------------
    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    @property
    def DATABASE_URL(self) -> str:
        if self.DB_URL:
            return self.DB_URL
        password = quote_plus(self.DB_PASSWORD)
        return f"postgresql+asyncpg://{self.DB_USER}:{password}@{self.DB_HOST}:{self.DB_PORT}/{self.DB_NAME}"

    @property
    def database_url_sync(self) -> str:
        """Synchronous URL for Alembic, with % doubled for its INI interpolation"""
        url = self.DATABASE_URL.replace("+asyncpg", "").replace("+aiosqlite", "")
        return url.replace("%", "%%")

    def get_integration_encryption_key(self) -> str:
        if self.INTEGRATION_ENCRYPTION_KEY:
            return self.INTEGRATION_ENCRYPTION_KEY
        if self.is_production:
            raise ValueError("INTEGRATION_ENCRYPTION_KEY must be set in production")
        # Stable development key so stored secrets survive restarts
        digest = hashlib.sha256(self.SECRET_KEY.encode("utf-8")).digest()
        return base64.urlsafe_b64encode(digest).decode("utf-8")

    def validate_configuration(self) -> List[str]:
        """Startup checks; returns human-readable issues"""
        issues = []
        if not self.is_production:
            return issues

        if not self.INTEGRATION_ADMIN_TOKEN:
            issues.append("INTEGRATION_ADMIN_TOKEN not set - management API will reject all calls")
        if not self.INTEGRATION_ENCRYPTION_KEY:
            issues.append("INTEGRATION_ENCRYPTION_KEY not set - webhook secrets cannot be stored")
        if self.JWT_ALGORITHM == "RS256" and not (self.JWT_PRIVATE_KEY and self.JWT_PUBLIC_KEY):
            issues.append("JWT_ALGORITHM=RS256 requires JWT_PRIVATE_KEY and JWT_PUBLIC_KEY")
        if not self.PUBLIC_BASE_URL.startswith("https://"):
            issues.append("PUBLIC_BASE_URL should use https in production")
        if "*" in self.CORS_ORIGINS:
            issues.append("CORS_ORIGINS allows any origin")
        return issues


@lru_cache()
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
