from app.schemas.integration import (
    CamelModel,
    PlanTier,
    PresenceStatus,
    MembershipStatus,
    WaitlistStartRequest,
    WaitlistStartResponse,
    AccessExchangeRequest,
    AccessExchangeResponse,
    LinkedIdentity,
    MembershipSnapshot,
    UserSummary,
    HeartbeatRequest,
    HeartbeatResponse,
    PlanTierRequest,
    PlanTierResponse,
    WidgetTokenRequest,
    WidgetTokenResponse,
    WidgetContextResponse,
    HostedJoinRequest,
    JoinContextResponse,
    JoinIntentSummary,
    IntegrationAppCreateRequest,
    IntegrationAppCreateResponse,
    IntegrationAppResponse,
    IntegrationAppUpdateRequest,
    IntegrationHealthResponse,
    ApiKeyCreateRequest,
    ApiKeyCreateResponse,
    ApiKeyListResponse,
    ApiKeyResponse,
    ApiKeyRotateRequest,
    WebhookDeliveryListResponse,
    WebhookDeliveryResponse,
    WebhookSecretResponse,
    WebhookTestResponse,
    UsageSummaryResponse,
    EngagementCandidate,
    EngagementResponse,
    MemberApproveResponse,
)

__all__ = [
    "CamelModel",
    "PlanTier",
    "PresenceStatus",
    "MembershipStatus",
    # Partner API schemas
    "WaitlistStartRequest",
    "WaitlistStartResponse",
    "AccessExchangeRequest",
    "AccessExchangeResponse",
    "LinkedIdentity",
    "MembershipSnapshot",
    "UserSummary",
    "HeartbeatRequest",
    "HeartbeatResponse",
    "PlanTierRequest",
    "PlanTierResponse",
    "WidgetTokenRequest",
    "WidgetTokenResponse",
    "WidgetContextResponse",
    # Hosted join schemas
    "HostedJoinRequest",
    "JoinContextResponse",
    "JoinIntentSummary",
    # Management schemas
    "IntegrationAppCreateRequest",
    "IntegrationAppCreateResponse",
    "IntegrationAppResponse",
    "IntegrationAppUpdateRequest",
    "IntegrationHealthResponse",
    "ApiKeyCreateRequest",
    "ApiKeyCreateResponse",
    "ApiKeyListResponse",
    "ApiKeyResponse",
    "ApiKeyRotateRequest",
    "WebhookDeliveryListResponse",
    "WebhookDeliveryResponse",
    "WebhookSecretResponse",
    "WebhookTestResponse",
    "UsageSummaryResponse",
    "EngagementCandidate",
    "EngagementResponse",
    "MemberApproveResponse",
]
