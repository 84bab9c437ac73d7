"""
Integration error taxonomy
Raised by services, rendered by the exception handlers registered in main.py
"""
from typing import Any, Dict, Optional

from fastapi import status


class IntegrationError(Exception):
    status_code: int = status.HTTP_400_BAD_REQUEST
    code: str = "integration_error"
    default_message: str = "Integration request failed"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message": self.message,
            "code": self.code,
            "status_code": self.status_code,
        }


class Unauthorized(IntegrationError):
    status_code = status.HTTP_401_UNAUTHORIZED
    code = "unauthorized"
    default_message = "Invalid or revoked API key"


class NotFound(IntegrationError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "not_found"
    default_message = "Resource not found"


class Expired(IntegrationError):
    status_code = status.HTTP_410_GONE
    code = "expired"
    default_message = "Access code has expired"


class AlreadyRedeemed(IntegrationError):
    status_code = status.HTTP_409_CONFLICT
    code = "already_redeemed"
    default_message = "Access code has already been redeemed"


class IdentityConflict(IntegrationError):
    status_code = status.HTTP_409_CONFLICT
    code = "identity_conflict"
    default_message = "External user is already linked to a different account"


class NotLinked(IntegrationError):
    status_code = status.HTTP_409_CONFLICT
    code = "not_linked"
    default_message = "External user is not linked; exchange an access code first"


class FeatureDisabled(IntegrationError):
    status_code = status.HTTP_403_FORBIDDEN
    code = "feature_disabled"
    default_message = "This integration feature is disabled for the app"


class ValidationError(IntegrationError):
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    code = "validation_error"
    default_message = "Invalid request payload"
