"""JWT authentication for KontriVibe — lightweight, with server-side revocation."""
from __future__ import annotations

import hashlib
import hmac
import json
import base64
import time
import uuid
from datetime import datetime, timezone
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel, Field
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from kontrivibe.db.engine import get_session
from kontrivibe.db.tables import utcnow
from kontrivibe.db.user_tables import UserRow, RevokedTokenRow
from kontrivibe.errors import PremiumRequiredError
from kontrivibe.services.reconciliation import days_until, is_premium_active
from config.settings import settings

# ---- Password hashing (PBKDF2, no extra deps) ----

_ITERATIONS = 260_000
_SALT_LEN = 32


def hash_password(password: str) -> str:
    salt = uuid.uuid4().hex[:_SALT_LEN]
    dk = hashlib.pbkdf2_hmac("sha256", password.encode(), salt.encode(), _ITERATIONS)
    return f"{salt}${dk.hex()}"


def verify_password(password: str, stored: str) -> bool:
    salt, dk_hex = stored.split("$", 1)
    dk = hashlib.pbkdf2_hmac("sha256", password.encode(), salt.encode(), _ITERATIONS)
    return hmac.compare_digest(dk.hex(), dk_hex)


# ---- JWT (minimal, no PyJWT dependency) ----

_JWT_ALGO = "HS256"
_ACCESS_TTL = 3600 * 24 * 7  # 7 days
_REFRESH_TTL = 3600 * 24 * 30  # 30 days


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode()


def _b64url_decode(s: str) -> bytes:
    s += "=" * (4 - len(s) % 4)
    return base64.urlsafe_b64decode(s)


def _sign(payload: dict) -> str:
    header = _b64url(json.dumps({"alg": _JWT_ALGO, "typ": "JWT"}).encode())
    body = _b64url(json.dumps(payload).encode())
    sig_input = f"{header}.{body}".encode()
    sig = hmac.new(settings.JWT_SECRET.encode(), sig_input, hashlib.sha256).digest()
    return f"{header}.{body}.{_b64url(sig)}"


def decode_token(token: str) -> Optional[dict]:
    """Verify signature + expiry; returns the payload or None."""
    try:
        parts = token.split(".")
        if len(parts) != 3:
            return None
        sig_input = f"{parts[0]}.{parts[1]}".encode()
        expected = hmac.new(settings.JWT_SECRET.encode(), sig_input, hashlib.sha256).digest()
        actual = _b64url_decode(parts[2])
        if not hmac.compare_digest(expected, actual):
            return None
        payload = json.loads(_b64url_decode(parts[1]))
        if not isinstance(payload, dict):
            return None
        if payload.get("exp", 0) < time.time():
            return None
        return payload
    except (ValueError, UnicodeDecodeError):
        return None


def _issue(user_id: str, token_type: str, ttl: int) -> str:
    now = int(time.time())
    return _sign({
        "sub": user_id, "iat": now, "exp": now + ttl,
        "type": token_type, "jti": uuid.uuid4().hex,
    })


def create_tokens(user_id: str) -> dict:
    return {
        "access_token": _issue(user_id, "access", _ACCESS_TTL),
        "refresh_token": _issue(user_id, "refresh", _REFRESH_TTL),
        "token_type": "bearer",
    }


# ---- Revocation (logout before natural expiry) ----

async def is_revoked(session: AsyncSession, jti: str | None) -> bool:
    if not jti:
        return False
    result = await session.execute(
        select(RevokedTokenRow.expires_at).where(RevokedTokenRow.jti == jti)
    )
    expires_at = result.scalar_one_or_none()
    return expires_at is not None and expires_at > utcnow()


async def revoke_token(session: AsyncSession, payload: dict) -> None:
    """Remember a token as revoked until the moment it would have expired anyway."""
    jti = payload.get("jti")
    if not jti:
        return
    # Purge rows whose tokens have expired naturally
    await session.execute(delete(RevokedTokenRow).where(RevokedTokenRow.expires_at <= utcnow()))
    if await session.get(RevokedTokenRow, jti) is None:
        expires_at = datetime.fromtimestamp(payload.get("exp", 0), tz=timezone.utc).replace(tzinfo=None)
        session.add(RevokedTokenRow(jti=jti, user_id=payload.get("sub"), expires_at=expires_at))
    await session.commit()


# ---- FastAPI dependency ----

_bearer = HTTPBearer(auto_error=False)


async def get_token_payload(
    creds: Optional[HTTPAuthorizationCredentials] = Depends(_bearer),
    session: AsyncSession = Depends(get_session),
) -> Optional[dict]:
    if not creds:
        return None
    payload = decode_token(creds.credentials)
    if not payload or payload.get("type") != "access":
        return None
    if await is_revoked(session, payload.get("jti")):
        return None
    return payload


async def get_current_user(
    payload: Optional[dict] = Depends(get_token_payload),
    session: AsyncSession = Depends(get_session),
) -> Optional[UserRow]:
    if not payload:
        return None
    return await session.get(UserRow, payload["sub"])


async def require_user(user: Optional[UserRow] = Depends(get_current_user)) -> UserRow:
    if not user:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Authentication required")
    return user


# ---- Premium gating ----

class SubscriptionInfo(BaseModel):
    is_premium: bool = Field(..., serialization_alias="isPremium")
    expires_at: Optional[datetime] = Field(None, serialization_alias="expiresAt")
    days_remaining: int = Field(0, serialization_alias="daysRemaining")


async def require_premium(user: UserRow = Depends(require_user)) -> SubscriptionInfo:
    """Gate a route on an unexpired premium entitlement; the flag alone is not enough."""
    now = utcnow()
    if not is_premium_active(user, now):
        raise PremiumRequiredError()
    return SubscriptionInfo(
        is_premium=True,
        expires_at=user.premium_expires_at,
        days_remaining=days_until(user.premium_expires_at, now),
    )


async def get_subscription_info(
    user: Optional[UserRow] = Depends(get_current_user),
) -> Optional[SubscriptionInfo]:
    """Non-blocking: None for anonymous callers, never raises for free users."""
    if not user:
        return None
    now = utcnow()
    active = is_premium_active(user, now)
    return SubscriptionInfo(
        is_premium=active,
        expires_at=user.premium_expires_at,
        days_remaining=days_until(user.premium_expires_at, now) if active else 0,
    )


# ---- Request/Response models ----

class SignUpRequest(BaseModel):
    full_name: str = Field(..., min_length=1, max_length=200, alias="fullName")
    email: str = Field(..., max_length=320)
    password: str = Field(..., min_length=8, max_length=128)

    model_config = {"populate_by_name": True}


class LoginRequest(BaseModel):
    email: str
    password: str


class RefreshRequest(BaseModel):
    refresh_token: str = Field(..., alias="refreshToken")

    model_config = {"populate_by_name": True}


class LogoutRequest(BaseModel):
    refresh_token: Optional[str] = Field(None, alias="refreshToken")

    model_config = {"populate_by_name": True}
