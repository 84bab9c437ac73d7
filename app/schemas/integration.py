from datetime import datetime
from html import escape
import re
from typing import Any, List, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator
from pydantic.alias_generators import to_camel

from app.utils.urls import normalize_origin

PresenceStatus = Literal["live", "idle", "offline"]
PlanTier = Literal["free", "mid", "pro"]
MembershipStatus = Literal["pending", "approved"]


def _sanitize_name(value: Optional[str], max_len: int = 100) -> str:
    text = escape((value or "").strip())
    text = re.sub(r"\s+", " ", text)
    return text[:max_len]


def _clean_optional_name(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    return _sanitize_name(value) or None


def _validate_http_url(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    if not value:
        return None
    if not normalize_origin(value):
        raise ValueError("URL must be an absolute http(s) URL")
    return value


def _validate_deep_link(value: Optional[str]) -> Optional[str]:
    if value is None or not value.strip():
        return None
    value = value.strip()
    if "://" not in value:
        raise ValueError("Deep link must include a scheme, e.g. myapp://callback")
    return value


def _normalize_origins(value: Any) -> List[str]:
    if isinstance(value, str):
        value = value.split(",")
    cleaned: List[str] = []
    for raw in value:
        origin = normalize_origin(str(raw))
        if not origin:
            raise ValueError(f"Invalid origin: {raw}")
        if origin not in cleaned:
            cleaned.append(origin)
    return cleaned


class CamelModel(BaseModel):
    """Snake-case attributes, camelCase on the wire"""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


# ============================================================================
# Partner API (/api/integration/v1)
# ============================================================================

class WaitlistStartRequest(CamelModel):
    external_user_id: Optional[str] = Field(default=None, min_length=1, max_length=255)
    email: Optional[EmailStr] = None
    phone: Optional[str] = Field(default=None, max_length=32)
    return_to: Optional[str] = Field(default=None, max_length=2048)


class WaitlistStartResponse(CamelModel):
    continuation_url: str
    expires_at: datetime


class AccessExchangeRequest(CamelModel):
    code: str = Field(..., min_length=8, max_length=256)
    external_user_id: str = Field(..., min_length=1, max_length=255)
    client_platform: Optional[str] = Field(default=None, max_length=64)

    @field_validator("code", "external_user_id")
    @classmethod
    def strip_value(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Value must not be blank")
        return value


class UserSummary(CamelModel):
    id: UUID
    email: Optional[str] = None
    phone: Optional[str] = None
    username: Optional[str] = None
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None


class LinkedIdentity(CamelModel):
    integration_app_id: UUID
    public_app_id: str
    external_user_id: str
    firstuser_user_id: UUID
    current_plan_tier: PlanTier
    linked_at: datetime


class MembershipSnapshot(CamelModel):
    status: Optional[MembershipStatus] = None
    badge_tier: Optional[str] = None
    app_space_id: UUID
    joined_at: Optional[datetime] = None
    approved_at: Optional[datetime] = None


class AccessExchangeResponse(CamelModel):
    user: UserSummary
    linked_identity: LinkedIdentity
    membership: MembershipSnapshot


class HeartbeatRequest(CamelModel):
    external_user_id: str = Field(..., min_length=1, max_length=255)
    status: PresenceStatus = "live"
    client_platform: Optional[str] = Field(default=None, max_length=64)


class HeartbeatResponse(CamelModel):
    membership_status: Optional[MembershipStatus] = None


class PlanTierRequest(CamelModel):
    plan_tier: PlanTier

    @field_validator("plan_tier", mode="before")
    @classmethod
    def normalize_tier(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value


class PlanTierResponse(CamelModel):
    current_plan_tier: PlanTier


class WidgetTokenRequest(CamelModel):
    external_user_id: str = Field(..., min_length=1, max_length=255)


class WidgetTokenResponse(CamelModel):
    token: str
    widget_url: str
    expires_at: datetime


class WidgetContextResponse(CamelModel):
    public_app_id: str
    app_name: Optional[str] = None
    firstuser_user_id: UUID
    external_user_id: str
    expires_at: datetime


# ============================================================================
# Hosted join (/i/{publicAppId}/join)
# ============================================================================

class HostedJoinRequest(CamelModel):
    # Required unless the browser carries a platform session
    email: Optional[EmailStr] = None
    display_name: Optional[str] = Field(default=None, max_length=255)
    phone: Optional[str] = Field(default=None, max_length=32)
    return_to: Optional[str] = Field(default=None, max_length=2048)
    intent: Optional[str] = Field(default=None, max_length=256)

    @field_validator("display_name")
    @classmethod
    def clean_display_name(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return _sanitize_name(value, max_len=255) or None


class JoinIntentSummary(CamelModel):
    external_user_id: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    expires_at: datetime


class JoinContextResponse(CamelModel):
    public_app_id: str
    app_name: Optional[str] = None
    return_to: str
    embedded: bool
    intent: Optional[JoinIntentSummary] = None


# ============================================================================
# Management API (/api/v1/integrations)
# ============================================================================

class IntegrationAppCreateRequest(CamelModel):
    app_space_id: UUID
    public_app_id: Optional[str] = Field(default=None, min_length=3, max_length=64, pattern=r"^[A-Za-z0-9_-]+$")
    name: Optional[str] = Field(default=None, max_length=100)
    redirect_enabled: bool = True
    embedded_enabled: bool = False
    web_redirect_url: Optional[str] = Field(default=None, max_length=2048)
    mobile_deep_link_url: Optional[str] = Field(default=None, max_length=2048)
    allowed_origins: List[str] = Field(default_factory=list, max_length=50)
    webhook_url: Optional[str] = Field(default=None, max_length=2048)

    @field_validator("name")
    @classmethod
    def validate_name(cls, value: Optional[str]) -> Optional[str]:
        return _clean_optional_name(value)

    @field_validator("web_redirect_url", "webhook_url")
    @classmethod
    def validate_urls(cls, value: Optional[str]) -> Optional[str]:
        return _validate_http_url(value)

    @field_validator("mobile_deep_link_url")
    @classmethod
    def validate_deep_link(cls, value: Optional[str]) -> Optional[str]:
        return _validate_deep_link(value)

    @field_validator("allowed_origins", mode="before")
    @classmethod
    def validate_origins(cls, value: Any) -> List[str]:
        if value is None:
            return []
        return _normalize_origins(value)


class IntegrationAppUpdateRequest(CamelModel):
    name: Optional[str] = Field(default=None, max_length=100)
    redirect_enabled: Optional[bool] = None
    embedded_enabled: Optional[bool] = None
    web_redirect_url: Optional[str] = Field(default=None, max_length=2048)
    mobile_deep_link_url: Optional[str] = Field(default=None, max_length=2048)
    allowed_origins: Optional[List[str]] = Field(default=None, max_length=50)
    webhook_url: Optional[str] = Field(default=None, max_length=2048)

    @field_validator("name")
    @classmethod
    def validate_name(cls, value: Optional[str]) -> Optional[str]:
        return _clean_optional_name(value)

    @field_validator("web_redirect_url", "webhook_url")
    @classmethod
    def validate_urls(cls, value: Optional[str]) -> Optional[str]:
        return _validate_http_url(value)

    @field_validator("mobile_deep_link_url")
    @classmethod
    def validate_deep_link(cls, value: Optional[str]) -> Optional[str]:
        return _validate_deep_link(value)

    @field_validator("allowed_origins", mode="before")
    @classmethod
    def validate_origins(cls, value: Any) -> Optional[List[str]]:
        if value is None:
            return None
        return _normalize_origins(value)


class IntegrationAppResponse(CamelModel):
    integration_app_id: UUID
    app_space_id: UUID
    public_app_id: str
    name: Optional[str] = None
    redirect_enabled: bool
    embedded_enabled: bool
    web_redirect_url: Optional[str] = None
    mobile_deep_link_url: Optional[str] = None
    allowed_origins: List[str] = Field(default_factory=list)
    webhook_url: Optional[str] = None
    webhook_secret_last_four: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class IntegrationAppCreateResponse(CamelModel):
    app: IntegrationAppResponse
    webhook_secret: str
    message: str = "Integration created. Save the webhook secret now because it will not be shown again."


class ApiKeyCreateRequest(CamelModel):
    name: Optional[str] = Field(default=None, max_length=100)

    @field_validator("name")
    @classmethod
    def validate_name(cls, value: Optional[str]) -> Optional[str]:
        return _clean_optional_name(value)


class ApiKeyRotateRequest(ApiKeyCreateRequest):
    revoke_existing: bool = False


class ApiKeyResponse(CamelModel):
    key_id: str
    name: Optional[str] = None
    last_four: str
    request_count: int
    last_used_at: Optional[datetime] = None
    created_at: datetime
    revoked_at: Optional[datetime] = None


class ApiKeyListResponse(CamelModel):
    keys: List[ApiKeyResponse]
    total: int


class ApiKeyCreateResponse(CamelModel):
    api_key: str
    key: ApiKeyResponse
    revoked_key_ids: List[str] = Field(default_factory=list)
    message: str = "API key created. Save it now because it will not be shown again."


class WebhookSecretResponse(CamelModel):
    webhook_secret: str
    last_four: str


class WebhookDeliveryResponse(CamelModel):
    delivery_id: UUID
    event_id: str
    event_type: str
    attempt: int
    status: str
    next_retry_at: Optional[datetime] = None
    response_status: Optional[int] = None
    last_error: Optional[str] = None
    delivered_at: Optional[datetime] = None
    created_at: datetime


class WebhookDeliveryListResponse(CamelModel):
    deliveries: List[WebhookDeliveryResponse]
    total: int


class WebhookTestResponse(CamelModel):
    delivery_id: UUID
    event_id: str
    status: str


class IntegrationHealthResponse(CamelModel):
    integration_app_id: UUID
    active_api_keys: int
    linked_users: int
    webhook_configured: bool
    pending_deliveries: int
    failed_deliveries: int
    last_delivered_at: Optional[datetime] = None


class UsageSummaryResponse(CamelModel):
    sessions: int
    total_minutes: float
    average_minutes: float


class EngagementCandidate(CamelModel):
    user_id: UUID
    external_user_id: Optional[str] = None
    email: Optional[str] = None
    display_name: Optional[str] = None
    membership_status: Optional[MembershipStatus] = None
    sessions: int
    total_minutes: float
    last_seen_at: Optional[datetime] = None


class EngagementResponse(CamelModel):
    candidates: List[EngagementCandidate]
    total: int


class MemberApproveResponse(CamelModel):
    member_id: UUID
    user_id: UUID
    status: MembershipStatus
    approved_at: Optional[datetime] = None
    webhook_dispatched: bool
