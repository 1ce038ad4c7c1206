"""Auth API — signup, login, token refresh and logout."""
from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from kontrivibe.auth import (
    LoginRequest, LogoutRequest, RefreshRequest, SignUpRequest,
    create_tokens, decode_token, get_token_payload, hash_password,
    is_revoked, require_user, revoke_token, verify_password,
)
from kontrivibe.db.engine import get_session
from kontrivibe.db.user_tables import UserRow

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["auth"])


def _user_summary(user: UserRow) -> dict:
    return {
        "id": user.id,
        "fullName": user.full_name,
        "email": user.email,
        "role": user.role,
        "isPremium": user.is_premium,
    }


@router.post("/signup", status_code=201)
async def signup(req: SignUpRequest, session: AsyncSession = Depends(get_session)):
    """Create a new user account."""
    email = req.email.strip().lower()
    existing = await session.execute(select(UserRow).where(UserRow.email == email))
    if existing.scalar_one_or_none():
        raise HTTPException(409, "Email already registered")
    user = UserRow(
        full_name=req.full_name,
        email=email,
        password_hash=hash_password(req.password),
    )
    session.add(user)
    await session.commit()
    await session.refresh(user)
    logger.info("User signed up: %s", user.id)
    return {"user": _user_summary(user), **create_tokens(user.id)}


@router.post("/login")
async def login(req: LoginRequest, session: AsyncSession = Depends(get_session)):
    """Log in with email + password, returns JWT tokens."""
    result = await session.execute(select(UserRow).where(UserRow.email == req.email.strip().lower()))
    user = result.scalar_one_or_none()
    if not user or not verify_password(req.password, user.password_hash):
        raise HTTPException(401, "Invalid email or password")
    return {"user": _user_summary(user), **create_tokens(user.id)}


@router.post("/refresh")
async def refresh_token(req: RefreshRequest, session: AsyncSession = Depends(get_session)):
    """Exchange a valid refresh token for new access + refresh tokens."""
    payload = decode_token(req.refresh_token)
    if not payload or payload.get("type") != "refresh":
        raise HTTPException(401, "Invalid or expired refresh token")
    if await is_revoked(session, payload.get("jti")):
        raise HTTPException(401, "Refresh token has been revoked")
    user = await session.get(UserRow, payload.get("sub"))
    if not user:
        raise HTTPException(401, "User not found")
    # Rotate: the old refresh token can't be used twice
    await revoke_token(session, payload)
    return {"user": _user_summary(user), **create_tokens(user.id)}


@router.post("/logout")
async def logout(
    req: Optional[LogoutRequest] = None,
    user: UserRow = Depends(require_user),
    access_payload: Optional[dict] = Depends(get_token_payload),
    session: AsyncSession = Depends(get_session),
):
    """Revoke the presented access token (and refresh token, if given)."""
    await revoke_token(session, access_payload)
    if req and req.refresh_token:
        refresh_payload = decode_token(req.refresh_token)
        if refresh_payload and refresh_payload.get("sub") == user.id:
            await revoke_token(session, refresh_payload)
    logger.info("User logged out: %s", user.id)
    return {"success": True, "message": "Logged out successfully"}
