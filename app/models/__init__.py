from app.models.user import User, WaitlistMember
from app.models.integration import (
    IntegrationAccessCode,
    IntegrationApiKey,
    IntegrationApp,
    IntegrationIdentityLink,
    IntegrationUsageSession,
    IntegrationWaitlistIntent,
    IntegrationWebhookDelivery,
)


__all__ = [
    "User",
    "WaitlistMember",
    "IntegrationApp",
    "IntegrationApiKey",
    "IntegrationIdentityLink",
    "IntegrationAccessCode",
    "IntegrationUsageSession",
    "IntegrationWebhookDelivery",
    "IntegrationWaitlistIntent",
]
