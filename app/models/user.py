from sqlalchemy import Column, String, ForeignKey, CheckConstraint, UniqueConstraint, Uuid
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
import uuid

from app.core.database import Base, UTCDateTime


class User(Base):
    """Platform account; owned by the membership side of the product"""
    __tablename__ = "users"
    __table_args__ = {'extend_existing': True}

    # Primary key
    user_id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4, index=True)

    # Contact
    email = Column(String(255), unique=True, index=True, nullable=True)
    phone = Column(String(32), nullable=True)
    username = Column(String(100), nullable=True)
    display_name = Column(String(255), nullable=True)
    avatar_url = Column(String(1024), nullable=True)

    # Timestamps
    created_at = Column(UTCDateTime, default=lambda: datetime.now(timezone.utc), nullable=False)

    memberships = relationship("WaitlistMember", back_populates="user", lazy="raise")

    def __repr__(self):
        return f"<User(id={self.user_id}, email={self.email})>"


class WaitlistMember(Base):
    """A user's place on one app space waitlist"""
    __tablename__ = "waitlist_members"
    __table_args__ = (
        UniqueConstraint("app_space_id", "user_id", name="uq_waitlist_members_space_user"),
        CheckConstraint("status IN ('pending', 'approved')", name="ck_waitlist_members_status"),
        {'extend_existing': True},
    )

    member_id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4, index=True)
    app_space_id = Column(Uuid(as_uuid=True), nullable=False, index=True)
    user_id = Column(Uuid(as_uuid=True), ForeignKey("users.user_id", ondelete="CASCADE"), nullable=False, index=True)

    status = Column(String(16), nullable=False, default="pending", server_default="pending")
    badge_tier = Column(String(32), nullable=True)

    joined_at = Column(UTCDateTime, default=lambda: datetime.now(timezone.utc), nullable=False)
    approved_at = Column(UTCDateTime, nullable=True)

    user = relationship("User", back_populates="memberships", lazy="raise")

    def __repr__(self):
        return f"<WaitlistMember(space={self.app_space_id}, user={self.user_id}, status={self.status})>"
