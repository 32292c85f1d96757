"""
Named, TTL-bound locks for the scheduled sweepers.

Every sweep acquires its lock before doing any work and releases it
afterwards. A holder that crashes never blocks the others for longer than
the TTL: an expired lock can be taken over by the next caller.

    async with hold(locks, "outbox:processor", ttl=30) as acquired:
        if not acquired:
            return
        ...
"""
import asyncio
import logging
import secrets
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import AsyncIterator, Callable, Optional, Protocol

from sqlalchemy import delete, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ordercore.db import utcnow
from ordercore.models import JobLock

logger = logging.getLogger("ordercore.locks")


class LockService(Protocol):
    async def acquire(self, name: str, ttl_seconds: int) -> Optional[str]:
        """Returns an owner token when the lock was taken, None otherwise."""
        ...

    async def release(self, name: str, token: str) -> None:
        ...


class InMemoryLockService:
    """Process-local implementation, used by tests and single-instance runs."""

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self._clock = clock
        self._locks: dict[str, tuple[str, datetime]] = {}
        self._mutex = asyncio.Lock()

    async def acquire(self, name: str, ttl_seconds: int) -> Optional[str]:
        async with self._mutex:
            now = self._clock()
            held = self._locks.get(name)
            if held and held[1] > now:
                return None
            token = secrets.token_hex(16)
            self._locks[name] = (token, now + timedelta(seconds=ttl_seconds))
            return token

    async def release(self, name: str, token: str) -> None:
        async with self._mutex:
            held = self._locks.get(name)
            if held and held[0] == token:
                del self._locks[name]

    def is_held(self, name: str) -> bool:
        held = self._locks.get(name)
        return bool(held and held[1] > self._clock())


class DatabaseLockService:
    """
    Lock rows in the `job_locks` table, shared by every process talking to
    the same database. The primary key on `name` decides who wins a race.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Callable[[], datetime] = utcnow,
    ):
        self._session_factory = session_factory
        self._clock = clock

    async def acquire(self, name: str, ttl_seconds: int) -> Optional[str]:
        token = secrets.token_hex(16)
        now = self._clock()
        expires_at = now + timedelta(seconds=ttl_seconds)

        async with self._session_factory() as session:
            session.add(JobLock(name=name, owner=token, expires_at=expires_at))
            try:
                await session.commit()
                return token
            except IntegrityError:
                await session.rollback()

            # lock row exists: take it over only if its holder let it expire
            result = await session.execute(
                update(JobLock)
                .where(JobLock.name == name, JobLock.expires_at <= now)
                .values(owner=token, expires_at=expires_at)
            )
            await session.commit()
            if result.rowcount == 1:
                logger.info("[Locks] Took over expired lock '%s'", name)
                return token
            return None

    async def release(self, name: str, token: str) -> None:
        async with self._session_factory() as session:
            await session.execute(
                delete(JobLock).where(JobLock.name == name, JobLock.owner == token)
            )
            await session.commit()


@asynccontextmanager
async def hold(locks: LockService, name: str, ttl: int) -> AsyncIterator[bool]:
    token = await locks.acquire(name, ttl)
    if token is None:
        logger.debug("[Locks] '%s' is held elsewhere, skipping run", name)
        yield False
        return
    try:
        yield True
    finally:
        await locks.release(name, token)
