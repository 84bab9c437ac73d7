"""Services package"""
from app.services.webhook_service import WebhookService, webhook_service
from app.services.identity_link_service import IdentityLinkService, identity_link_service
from app.services.api_key_service import APIKeyService, api_key_service
from app.services.access_code_service import AccessCodeService, access_code_service
from app.services.heartbeat_service import HeartbeatService, heartbeat_service
from app.services.chat_widget_service import ChatWidgetService, chat_widget_service
from app.services.integration_app_service import IntegrationAppService, integration_app_service
from app.services.join_service import JoinService, join_service

__all__ = [
    'WebhookService',
    'webhook_service',
    'IdentityLinkService',
    'identity_link_service',
    'APIKeyService',
    'api_key_service',
    'AccessCodeService',
    'access_code_service',
    'HeartbeatService',
    'heartbeat_service',
    'ChatWidgetService',
    'chat_widget_service',
    'IntegrationAppService',
    'integration_app_service',
    'JoinService',
    'join_service',
]
