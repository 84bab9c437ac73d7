import uuid

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    Column,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import relationship

from app.core.database import Base, JSONType, UTCDateTime
from app.utils.clock import utcnow


class IntegrationApp(Base):
    __tablename__ = "integration_apps"
    __table_args__ = {"extend_existing": True}

    integration_app_id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4, index=True)
    app_space_id = Column(Uuid(as_uuid=True), nullable=False, unique=True, index=True)
    public_app_id = Column(String(64), nullable=False, unique=True, index=True)
    name = Column(String(100), nullable=True)

    redirect_enabled = Column(Boolean, nullable=False, default=True, server_default="true")
    embedded_enabled = Column(Boolean, nullable=False, default=False, server_default="false")
    web_redirect_url = Column(String(2048), nullable=True)
    mobile_deep_link_url = Column(String(2048), nullable=True)
    allowed_origins = Column(JSONType, nullable=False, default=list)

    webhook_url = Column(String(2048), nullable=True)
    webhook_secret_encrypted = Column(Text, nullable=True)
    webhook_secret_last_four = Column(String(4), nullable=True)

    created_at = Column(UTCDateTime, default=utcnow, nullable=False)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False)

    api_keys = relationship("IntegrationApiKey", back_populates="integration_app", lazy="raise")


class IntegrationApiKey(Base):
    __tablename__ = "integration_api_keys"
    __table_args__ = {"extend_existing": True}

    api_key_id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4, index=True)
    integration_app_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("integration_apps.integration_app_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    key_id = Column(String(64), nullable=False, unique=True, index=True)
    secret_hash = Column(String(64), nullable=False)
    last_four = Column(String(4), nullable=False)
    name = Column(String(100), nullable=True)

    request_count = Column(BigInteger, nullable=False, default=0, server_default="0")
    last_used_at = Column(UTCDateTime, nullable=True)
    created_at = Column(UTCDateTime, default=utcnow, nullable=False)
    revoked_at = Column(UTCDateTime, nullable=True)

    integration_app = relationship("IntegrationApp", back_populates="api_keys", lazy="raise")


class IntegrationIdentityLink(Base):
    __tablename__ = "integration_identity_links"
    __table_args__ = (
        UniqueConstraint("integration_app_id", "external_user_id", name="uq_integration_links_app_external"),
        UniqueConstraint("integration_app_id", "user_id", name="uq_integration_links_app_user"),
        CheckConstraint("current_plan_tier IN ('free', 'mid', 'pro')", name="ck_integration_links_plan_tier"),
        {"extend_existing": True},
    )

    link_id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4, index=True)
    integration_app_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("integration_apps.integration_app_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    external_user_id = Column(String(255), nullable=False)
    user_id = Column(Uuid(as_uuid=True), ForeignKey("users.user_id", ondelete="CASCADE"), nullable=False, index=True)
    current_plan_tier = Column(String(8), nullable=False, default="free", server_default="free")

    created_at = Column(UTCDateTime, default=utcnow, nullable=False)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False)


class IntegrationAccessCode(Base):
    __tablename__ = "integration_access_codes"
    __table_args__ = (
        CheckConstraint(
            "status IN ('issued', 'redeemed', 'expired')",
            name="ck_integration_access_codes_status",
        ),
        Index("ix_integration_access_codes_app_user_status", "integration_app_id", "user_id", "status"),
        {"extend_existing": True},
    )

    access_code_id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4, index=True)
    integration_app_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("integration_apps.integration_app_id", ondelete="CASCADE"),
        nullable=False,
    )
    user_id = Column(Uuid(as_uuid=True), ForeignKey("users.user_id", ondelete="CASCADE"), nullable=False)
    app_space_id = Column(Uuid(as_uuid=True), nullable=False)

    code_hash = Column(String(64), nullable=False, unique=True, index=True)
    status = Column(String(16), nullable=False, default="issued", server_default="issued")
    expires_at = Column(UTCDateTime, nullable=False)
    redeemed_at = Column(UTCDateTime, nullable=True)
    # Set when the code was issued for a known external user; redeem must match it
    expected_external_user_id = Column(String(255), nullable=True)
    redeemed_external_user_id = Column(String(255), nullable=True)
    created_at = Column(UTCDateTime, default=utcnow, nullable=False)


class IntegrationUsageSession(Base):
    __tablename__ = "integration_usage_sessions"
    __table_args__ = (
        Index("ix_integration_usage_sessions_open", "integration_app_id", "user_id", "ended_at"),
        {"extend_existing": True},
    )

    session_id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4, index=True)
    integration_app_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("integration_apps.integration_app_id", ondelete="CASCADE"),
        nullable=False,
    )
    user_id = Column(Uuid(as_uuid=True), ForeignKey("users.user_id", ondelete="CASCADE"), nullable=False)

    client_platform = Column(String(32), nullable=False, default="web", server_default="web")
    membership_status = Column(String(16), nullable=True)
    started_at = Column(UTCDateTime, default=utcnow, nullable=False)
    last_seen_at = Column(UTCDateTime, default=utcnow, nullable=False)
    ended_at = Column(UTCDateTime, nullable=True)
    duration_seconds = Column(Integer, nullable=True)


class IntegrationWebhookDelivery(Base):
    __tablename__ = "integration_webhook_deliveries"
    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'delivered', 'failed')",
            name="ck_integration_webhook_deliveries_status",
        ),
        Index("ix_integration_webhook_deliveries_retry", "status", "next_retry_at"),
        {"extend_existing": True},
    )

    delivery_id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4, index=True)
    integration_app_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("integration_apps.integration_app_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    event_id = Column(String(64), nullable=False, index=True)
    event_type = Column(String(64), nullable=False)
    payload = Column(JSONType, nullable=False)
    signature = Column(String(128), nullable=False)
    attempt = Column(Integer, nullable=False, default=1, server_default="1")
    status = Column(String(16), nullable=False, default="pending", server_default="pending")
    next_retry_at = Column(UTCDateTime, nullable=True)
    response_status = Column(Integer, nullable=True)
    last_error = Column(Text, nullable=True)
    delivered_at = Column(UTCDateTime, nullable=True)

    created_at = Column(UTCDateTime, default=utcnow, nullable=False)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False)


class IntegrationWaitlistIntent(Base):
    __tablename__ = "integration_waitlist_intents"
    __table_args__ = {"extend_existing": True}

    intent_id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4, index=True)
    integration_app_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("integration_apps.integration_app_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    token_hash = Column(String(64), nullable=False, unique=True, index=True)
    external_user_id = Column(String(255), nullable=True)
    email = Column(String(255), nullable=True)
    phone = Column(String(32), nullable=True)
    return_to = Column(String(2048), nullable=True)

    expires_at = Column(UTCDateTime, nullable=False)
    consumed_at = Column(UTCDateTime, nullable=True)
    created_at = Column(UTCDateTime, default=utcnow, nullable=False)
