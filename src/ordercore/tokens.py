"""
Refresh-token rotation with reuse detection.

Each login starts a token family. Every refresh revokes the presented
token and issues its successor in the same family. Presenting a token that
was already rotated means it leaked: the whole family is revoked and the
user has to log in again.
"""
import logging
import secrets
from datetime import datetime, timedelta
from typing import Optional
from uuid import UUID

import jwt
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ordercore.config import settings
from ordercore.db import utcnow
from ordercore.errors import TokenReuseDetected, UnauthorizedError
from ordercore.models import RefreshToken
from ordercore.schemas import TokenPair

logger = logging.getLogger("ordercore.tokens")


def create_access_token(user_id: UUID, role: str, now: Optional[datetime] = None) -> str:
    now = now or utcnow()
    claims = {
        "sub": str(user_id),
        "role": role,
        "type": "access",
        "iat": now,
        "exp": now + timedelta(minutes=settings.ACCESS_TOKEN_TTL_MINUTES),
    }
    return jwt.encode(claims, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def decode_access_token(token: str) -> dict:
    try:
        claims = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except jwt.PyJWTError:
        raise UnauthorizedError("Invalid or expired access token")
    if claims.get("type") != "access":
        raise UnauthorizedError("Invalid or expired access token")
    return claims


def _issue(session: AsyncSession, user_id: UUID, role: str, family: str, now: datetime) -> TokenPair:
    refresh_token = secrets.token_urlsafe(48)
    session.add(
        RefreshToken(
            token=refresh_token,
            user_id=user_id,
            role=role,
            family=family,
            created_at=now,
            expires_at=now + timedelta(days=settings.REFRESH_TOKEN_TTL_DAYS),
        )
    )
    return TokenPair(
        access_token=create_access_token(user_id, role, now),
        refresh_token=refresh_token,
        expires_in=settings.ACCESS_TOKEN_TTL_MINUTES * 60,
    )


async def login(
    session: AsyncSession,
    user_id: UUID,
    role: str = "CUSTOMER",
    now: Optional[datetime] = None,
) -> TokenPair:
    """Called once credentials are verified; starts a new token family."""
    pair = _issue(session, user_id, role, secrets.token_hex(16), now or utcnow())
    await session.commit()
    return pair


async def _revoke_family(session: AsyncSession, family: str, now: datetime) -> int:
    result = await session.execute(
        update(RefreshToken)
        .where(RefreshToken.family == family, RefreshToken.revoked_at.is_(None))
        .values(revoked_at=now)
    )
    return result.rowcount


async def refresh(session: AsyncSession, token: str, now: Optional[datetime] = None) -> TokenPair:
    now = now or utcnow()
    result = await session.execute(select(RefreshToken).where(RefreshToken.token == token))
    stored = result.scalar_one_or_none()
    if stored is None or stored.expires_at <= now:
        raise UnauthorizedError("Invalid refresh token")

    family, user_id, role = stored.family, stored.user_id, stored.role

    rotated = await session.execute(
        update(RefreshToken)
        .where(RefreshToken.id == stored.id, RefreshToken.revoked_at.is_(None))
        .values(revoked_at=now)
    )
    if rotated.rowcount != 1:
        # already rotated once: someone is replaying it
        revoked = await _revoke_family(session, family, now)
        await session.commit()
        logger.warning(
            "[Tokens] Refresh token reuse for user %s, revoked %d tokens in family %s",
            user_id, revoked, family,
        )
        raise TokenReuseDetected()

    pair = _issue(session, user_id, role, family, now)
    await session.commit()
    return pair


async def logout(
    session: AsyncSession,
    user_id: UUID,
    token: Optional[str] = None,
    now: Optional[datetime] = None,
) -> int:
    """Revokes one refresh token, or every active token of the user."""
    query = update(RefreshToken).where(
        RefreshToken.user_id == user_id, RefreshToken.revoked_at.is_(None)
    )
    if token is not None:
        query = query.where(RefreshToken.token == token)
    result = await session.execute(query.values(revoked_at=now or utcnow()))
    await session.commit()
    return result.rowcount
