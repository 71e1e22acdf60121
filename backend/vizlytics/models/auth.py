"""Authentication/session models."""
import uuid
from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, Index, Integer, String, Text

from vizlytics.database import Base


class AuthSession(Base):
    """Tracks an issued login session and its refresh-token generation."""

    __tablename__ = "auth_sessions"
    __table_args__ = (
        Index("ix_auth_sessions_user_active", "user_id", "revoked"),
        Index("ix_auth_sessions_refresh_expires_at", "refresh_expires_at"),
    )

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(36), nullable=False, index=True)
    login = Column(String(39), nullable=False)
    name = Column(String(255))
    email = Column(String(255))
    avatar_url = Column(String(512))
    upstream_token = Column(Text, nullable=False)
    generation = Column(Integer, nullable=False, default=0)
    issued_at = Column(String(32), default=lambda: datetime.now(timezone.utc).isoformat(timespec="microseconds"))
    access_expires_at = Column(String(32), nullable=False)
    refresh_expires_at = Column(String(32), nullable=False)
    revoked = Column(Boolean, nullable=False, default=False)
    revoked_at = Column(String(32))
    last_used_at = Column(String(32))
    issuing_user_agent = Column(String(255))
    issuing_ip = Column(String(45))
