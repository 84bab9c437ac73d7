from datetime import datetime, timezone, timedelta
from typing import Optional, Dict, Any, Tuple
from jose import jwt, JWTError
from config import settings
import logging
import secrets

from app.core.errors import Unauthorized

logger = logging.getLogger(__name__)

WIDGET_AUDIENCE = "chat-widget"
SESSION_AUDIENCE = "firstuser-session"


class PlatformTokenManager:
    """
    Short-lived platform tokens (HS256 or RS256)

    Widget tokens let the hosted chat widget act for one linked user.
    Session tokens identify a signed-in platform account in the browser.
    """

    def __init__(self):
        self.algorithm = settings.JWT_ALGORITHM
        if self.algorithm == "RS256":
            self.signing_key = settings.JWT_PRIVATE_KEY
            self.verify_key = settings.JWT_PUBLIC_KEY
            if not self.signing_key or not self.verify_key:
                logger.warning("RS256 tokens requested but JWT keys are not configured")
        else:
            self.signing_key = settings.SECRET_KEY
            self.verify_key = settings.SECRET_KEY

    def _encode(self, claims: Dict[str, Any], ttl: timedelta, now: Optional[datetime]) -> Tuple[str, datetime]:
        now = now or datetime.now(timezone.utc)
        expire = now + ttl
        to_encode = dict(claims, exp=expire, iat=now, jti=secrets.token_hex(16))
        return jwt.encode(to_encode, self.signing_key, algorithm=self.algorithm), expire

    def _decode(self, token: str, audience: str, token_type: str) -> Dict[str, Any]:
        try:
            payload = jwt.decode(token, self.verify_key, algorithms=[self.algorithm], audience=audience)
        except jwt.ExpiredSignatureError:
            raise Unauthorized(f"{token_type.capitalize()} token has expired")
        except JWTError as e:
            logger.warning(f"{token_type} token decode error: {e}")
            raise Unauthorized(f"Could not validate {token_type} token")

        if payload.get("type") != token_type:
            raise Unauthorized("Invalid token type")
        return payload

    def create_widget_token(
        self,
        user_id: str,
        integration_app_id: str,
        additional_claims: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> Tuple[str, datetime]:
        claims = {"sub": user_id, "app": integration_app_id, "aud": WIDGET_AUDIENCE, "type": "widget"}
        if additional_claims:
            claims.update(additional_claims)
        return self._encode(claims, timedelta(seconds=settings.INTEGRATION_WIDGET_TOKEN_TTL_SECONDS), now)

    def decode_widget_token(self, token: str) -> Dict[str, Any]:
        return self._decode(token, WIDGET_AUDIENCE, "widget")

    def create_session_token(self, user_id: str, now: Optional[datetime] = None) -> Tuple[str, datetime]:
        claims = {"sub": user_id, "aud": SESSION_AUDIENCE, "type": "session"}
        return self._encode(claims, timedelta(minutes=settings.PLATFORM_SESSION_TTL_MINUTES), now)

    def decode_session_token(self, token: str) -> Dict[str, Any]:
        return self._decode(token, SESSION_AUDIENCE, "session")


token_manager = PlatformTokenManager()
