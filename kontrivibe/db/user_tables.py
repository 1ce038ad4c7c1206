"""User-related database tables: accounts, entitlement projection, revoked tokens."""
from __future__ import annotations

import uuid

from sqlalchemy import Column, String, Integer, Text, DateTime, Boolean, ForeignKey

from kontrivibe.db.tables import Base, utcnow


class UserRow(Base):
    """User account plus the derived premium entitlement fields."""
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    full_name = Column(String(200), nullable=False)
    email = Column(String(320), nullable=False, unique=True, index=True)
    password_hash = Column(String(256), nullable=False)  # PBKDF2-SHA256
    role = Column(String(20), nullable=False, default="user")  # user | artist | admin
    stage_name = Column(String(200), nullable=True)
    bio = Column(Text, nullable=True)
    profile_image = Column(String(2000), nullable=True)
    followers = Column(Integer, default=0)
    following = Column(Integer, default=0)

    # Entitlement projection, only honoured while premium_expires_at > now
    is_premium = Column(Boolean, nullable=False, default=False)
    premium_expires_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class RevokedTokenRow(Base):
    """Access/refresh tokens revoked before their natural expiry (logout)."""
    __tablename__ = "revoked_tokens"

    jti = Column(String(64), primary_key=True)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=True, index=True)
    # Row is only meaningful until the token would have expired anyway
    expires_at = Column(DateTime, nullable=False, index=True)
    revoked_at = Column(DateTime, default=utcnow)
