"""
Idempotency store for client-retried write requests.

Same key + same payload with a stored response  -> cached response
Same key + different payload                    -> conflict
Same key + no response yet (in flight)          -> conflict
No record, or an expired one                    -> caller proceeds

Placeholders are created with a unique-constraint-backed insert, so the
first writer wins without any explicit lock.
"""
import hashlib
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Optional, Tuple

from fastapi.encoders import jsonable_encoder
from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ordercore.config import settings
from ordercore.db import utcnow
from ordercore.errors import IdempotencyConflict
from ordercore.locks import LockService, hold
from ordercore.models import IdempotencyKey

logger = logging.getLogger("ordercore.idempotency")

CLEANUP_LOCK = "idempotency:cleanup"


@dataclass(frozen=True)
class CachedResponse:
    status_code: int
    body: Any


def hash_payload(body: Any) -> str:
    serialized = json.dumps(
        jsonable_encoder(body if body is not None else {}),
        sort_keys=True,
        separators=(",", ":"),
    )
    return hashlib.sha256(serialized.encode()).hexdigest()


async def check(
    session: AsyncSession,
    key: str,
    request_hash: str,
    now: Optional[datetime] = None,
) -> Optional[CachedResponse]:
    now = now or utcnow()
    result = await session.execute(select(IdempotencyKey).where(IdempotencyKey.key == key))
    existing = result.scalar_one_or_none()

    if existing is None:
        return None

    if existing.expires_at < now:
        await session.delete(existing)
        await session.commit()
        return None

    if existing.request_hash != request_hash:
        raise IdempotencyConflict("Idempotency key already used with a different request payload")

    if existing.status_code is not None and existing.response_body is not None:
        logger.debug("[Idempotency] Cache hit for key %s", key)
        return CachedResponse(existing.status_code, existing.response_body)

    raise IdempotencyConflict("A request with this idempotency key is already being processed")


async def reserve(
    session: AsyncSession,
    key: str,
    request_hash: str,
    now: Optional[datetime] = None,
) -> None:
    now = now or utcnow()
    session.add(
        IdempotencyKey(
            key=key,
            request_hash=request_hash,
            created_at=now,
            expires_at=now + timedelta(hours=settings.IDEMPOTENCY_TTL_HOURS),
        )
    )
    try:
        await session.commit()
    except IntegrityError:
        await session.rollback()
        raise IdempotencyConflict("A request with this idempotency key is already being processed")


async def store(session: AsyncSession, key: str, status_code: int, body: Any) -> None:
    await session.execute(
        update(IdempotencyKey)
        .where(IdempotencyKey.key == key)
        .values(status_code=status_code, response_body=body)
    )
    await session.commit()


async def remove(session: AsyncSession, key: str) -> None:
    await session.execute(delete(IdempotencyKey).where(IdempotencyKey.key == key))
    await session.commit()


async def cleanup_expired(session: AsyncSession, now: Optional[datetime] = None) -> int:
    now = now or utcnow()
    result = await session.execute(delete(IdempotencyKey).where(IdempotencyKey.expires_at < now))
    await session.commit()
    if result.rowcount:
        logger.info("[Idempotency] Removed %d expired keys", result.rowcount)
    return result.rowcount


async def cleanup_expired_keys(
    session_factory: async_sessionmaker[AsyncSession],
    locks: LockService,
    now: Optional[datetime] = None,
) -> int:
    async with hold(locks, CLEANUP_LOCK, settings.IDEMPOTENCY_CLEANUP_LOCK_TTL) as acquired:
        if not acquired:
            return 0
        async with session_factory() as session:
            return await cleanup_expired(session, now)


async def run_idempotent(
    session_factory: async_sessionmaker[AsyncSession],
    key: Optional[str],
    body: Any,
    operation: Callable[[], Awaitable[Any]],
    status_code: int = 200,
) -> Tuple[int, Any]:
    """
    Wraps a write operation with the idempotency protocol and returns
    (status_code, JSON-ready body). A replay returns exactly the stored body.
    """
    if not key:
        return status_code, jsonable_encoder(await operation())

    request_hash = hash_payload(body)
    async with session_factory() as session:
        cached = await check(session, key, request_hash)
        if cached is not None:
            return cached.status_code, cached.body
        await reserve(session, key, request_hash)

    try:
        response_body = jsonable_encoder(await operation())
    except Exception:
        async with session_factory() as session:
            await remove(session, key)
        raise

    # the operation has committed by now
    try:
        async with session_factory() as session:
            await store(session, key, status_code, response_body)
    except Exception:
        logger.error(
            "[Idempotency] Could not store response for key %s; key stays in flight until it expires",
            key, exc_info=True,
        )
    return status_code, response_body
