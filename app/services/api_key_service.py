from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
import logging

from app.core.errors import NotFound, Unauthorized
from app.core.redis_keys import get_redis_client, redis_key, redis_pattern
from app.core.signing import constant_time_equals, generate_id, generate_token, hash_secret
from app.models.integration import IntegrationApiKey

logger = logging.getLogger(__name__)

# Compared against when the key id is unknown so both paths hash and compare
_DUMMY_SECRET_HASH = hash_secret("firstuser-missing-key")


@dataclass
class AuthenticatedIntegration:
    integration_app_id: UUID
    api_key_id: UUID
    key_id: str


class APIKeyService:
    KEY_ID_PREFIX = "fuk"
    SECRET_BYTES = 32
    USAGE_COUNTER_TTL_SECONDS = 172800

    @classmethod
    def generate_credential(cls) -> Tuple[str, str, str]:
        """Return (key_id, secret, plain "keyId.secret")."""
        key_id = generate_id(cls.KEY_ID_PREFIX, 12)
        secret = generate_token(nbytes=cls.SECRET_BYTES)
        return key_id, secret, f"{key_id}.{secret}"

    @staticmethod
    def parse_credential(raw: Optional[str]) -> Optional[Tuple[str, str]]:
        if not raw:
            return None
        scheme, _, value = raw.strip().partition(" ")
        if scheme.lower() != "bearer":
            return None
        key_id, sep, secret = value.strip().partition(".")
        if not sep or not key_id or not secret:
            return None
        return key_id, secret

    @classmethod
    async def create_key(
        cls,
        *,
        integration_app_id: UUID,
        name: Optional[str],
        db: AsyncSession,
        commit: bool = True,
    ) -> Tuple[str, IntegrationApiKey]:
        key_id, secret, plain_key = cls.generate_credential()
        key = IntegrationApiKey(
            integration_app_id=integration_app_id,
            key_id=key_id,
            secret_hash=hash_secret(secret),
            last_four=secret[-4:],
            name=name,
        )
        db.add(key)
        if commit:
            await db.commit()
            await db.refresh(key)
        else:
            await db.flush()
        logger.info("Created integration API key %s for app %s", key_id, integration_app_id)
        return plain_key, key

    @classmethod
    async def list_keys(cls, *, integration_app_id: UUID, db: AsyncSession) -> List[IntegrationApiKey]:
        result = await db.execute(
            select(IntegrationApiKey)
            .where(IntegrationApiKey.integration_app_id == integration_app_id)
            .order_by(IntegrationApiKey.created_at.desc())
        )
        return list(result.scalars().all())

    @classmethod
    async def revoke_key(cls, *, integration_app_id: UUID, key_id: str, db: AsyncSession) -> IntegrationApiKey:
        result = await db.execute(
            select(IntegrationApiKey).where(
                IntegrationApiKey.key_id == key_id,
                IntegrationApiKey.integration_app_id == integration_app_id,
            )
        )
        key = result.scalar_one_or_none()
        if not key:
            raise NotFound("API key not found")

        if key.revoked_at is None:
            key.revoked_at = datetime.now(timezone.utc)
            await db.commit()
            await db.refresh(key)
            logger.info("Revoked integration API key %s", key.key_id)
        return key

    @classmethod
    async def rotate_key(
        cls,
        *,
        integration_app_id: UUID,
        name: Optional[str],
        db: AsyncSession,
        revoke_existing: bool = False,
    ) -> Tuple[str, IntegrationApiKey, List[str]]:
        """Create a new key; optionally revoke every other active key of the app."""
        revoked: List[str] = []
        if revoke_existing:
            result = await db.execute(
                select(IntegrationApiKey).where(
                    IntegrationApiKey.integration_app_id == integration_app_id,
                    IntegrationApiKey.revoked_at.is_(None),
                )
            )
            now = datetime.now(timezone.utc)
            for key in result.scalars().all():
                key.revoked_at = now
                revoked.append(key.key_id)

        plain_key, new_key = await cls.create_key(
            integration_app_id=integration_app_id,
            name=name or "Rotated key",
            db=db,
            commit=False,
        )
        await db.commit()
        await db.refresh(new_key)
        if revoked:
            logger.info("Rotation revoked %s API keys for app %s", len(revoked), integration_app_id)
        return plain_key, new_key, revoked

    @classmethod
    async def authenticate(cls, *, authorization: Optional[str], db: AsyncSession) -> AuthenticatedIntegration:
        parsed = cls.parse_credential(authorization)
        if not parsed:
            raise Unauthorized("Missing or malformed API key")
        key_id, secret = parsed

        result = await db.execute(select(IntegrationApiKey).where(IntegrationApiKey.key_id == key_id))
        key = result.scalar_one_or_none()

        supplied_hash = hash_secret(secret)
        stored_hash = key.secret_hash if key else _DUMMY_SECRET_HASH
        matches = constant_time_equals(supplied_hash, stored_hash)

        if not key or not matches:
            raise Unauthorized("Invalid API key")
        if key.revoked_at is not None:
            logger.warning("Rejected revoked integration API key %s", key.key_id)
            raise Unauthorized("API key has been revoked")

        return AuthenticatedIntegration(
            integration_app_id=key.integration_app_id,
            api_key_id=key.api_key_id,
            key_id=key.key_id,
        )

    @classmethod
    async def increment_usage(cls, api_key_id: UUID) -> None:
        redis_client = await get_redis_client()
        if not redis_client:
            return

        usage_key = redis_key("integration", "api_key", "usage", api_key_id)
        try:
            await redis_client.incr(usage_key)
            await redis_client.expire(usage_key, cls.USAGE_COUNTER_TTL_SECONDS)
        except Exception as exc:
            logger.warning("Failed to record API key usage: %s", exc)

    @classmethod
    async def flush_usage_to_db(cls, db: AsyncSession, redis_client=None) -> Dict[str, int]:
        redis_client = redis_client or await get_redis_client()
        if not redis_client:
            return {"keys_processed": 0, "total_increment": 0}

        cursor = 0
        usage_updates: Dict[UUID, int] = {}
        counter_keys: List[str] = []
        usage_pattern = redis_pattern("integration", "api_key", "usage", "*")

        while True:
            cursor, keys = await redis_client.scan(cursor=cursor, match=usage_pattern, count=200)
            for key in keys:
                raw_value = await redis_client.getdel(key)
                if not raw_value:
                    continue
                try:
                    api_key_id = UUID(key.rsplit(":", 1)[-1])
                    usage_updates[api_key_id] = usage_updates.get(api_key_id, 0) + int(raw_value)
                    counter_keys.append(key)
                except ValueError:
                    logger.warning("Skipping malformed usage counter %s", key)
            if cursor == 0:
                break

        if not usage_updates:
            return {"keys_processed": 0, "total_increment": 0}

        now = datetime.now(timezone.utc)
        total_increment = 0
        for api_key_id, delta in usage_updates.items():
            total_increment += delta
            await db.execute(
                update(IntegrationApiKey)
                .where(IntegrationApiKey.api_key_id == api_key_id)
                .values(
                    request_count=IntegrationApiKey.request_count + delta,
                    last_used_at=now,
                )
            )
        await db.commit()

        logger.info(
            "Flushed integration API key usage to database: keys=%s increment=%s",
            len(usage_updates),
            total_increment,
        )
        return {"keys_processed": len(usage_updates), "total_increment": total_increment}


api_key_service = APIKeyService()
