"""
FirstUser partner SDK

FirstUserClient runs in the partner's app and only talks to the partner's
own backend. FirstUserServerClient runs in that backend and holds the API key.
"""
from .client import FirstUserAPIError, FirstUserClient, FirstUserConfig, PresenceOptions
from .server import FirstUserServerClient
from .webhooks import build_webhook_router, verify_webhook_signature

__all__ = [
    "FirstUserAPIError",
    "FirstUserClient",
    "FirstUserConfig",
    "PresenceOptions",
    "FirstUserServerClient",
    "build_webhook_router",
    "verify_webhook_signature",
]
