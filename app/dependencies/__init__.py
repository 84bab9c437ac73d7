"""
Dependencies package initialization
"""
from .rate_limit import check_rate_limit, check_integration_rate_limit
from .integration_auth import IntegrationContext, ensure_integration_enabled, require_integration
from .platform_session import SESSION_COOKIE, get_session_user

__all__ = [
    'check_rate_limit',
    'check_integration_rate_limit',
    'IntegrationContext',
    'ensure_integration_enabled',
    'require_integration',
    'SESSION_COOKIE',
    'get_session_user',
]
