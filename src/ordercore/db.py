import asyncio
import logging
import random
from datetime import datetime, timezone
from typing import Awaitable, Callable, TypeVar

from sqlalchemy import DateTime
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base
from sqlalchemy.types import TypeDecorator

from ordercore.config import settings

logger = logging.getLogger("ordercore.db")

T = TypeVar("T")

SERIALIZATION_FAILURE_CODES = {"40001", "40P01"}

Base = declarative_base()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC datetime on every backend.

    SQLite hands back naive values; they are stored as UTC, so tag them on the
    way out.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None and value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return value

    def process_result_value(self, value, dialect):
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value


def build_engine(url: str, echo: bool = False) -> AsyncEngine:
    connect_args = {}
    if url.startswith("sqlite"):
        # writers queue on the database lock instead of failing immediately
        connect_args["timeout"] = 15
    return create_async_engine(
        url,
        echo=echo,
        isolation_level="SERIALIZABLE",
        connect_args=connect_args,
    )


def build_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=bind,
        class_=AsyncSession,
        expire_on_commit=False,
    )


engine = build_engine(settings.database_url, echo=settings.SQL_ECHO)

AsyncSessionLocal = build_session_factory(engine)


async def create_schema(bind: AsyncEngine) -> None:
    # models must be imported so their tables are registered on Base.metadata
    from ordercore import models  # noqa: F401

    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


def is_retryable(exc: DBAPIError) -> bool:
    """Serialization failures, deadlocks and SQLite lock contention."""
    orig = exc.orig
    code = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if code in SERIALIZATION_FAILURE_CODES:
        return True
    return "database is locked" in str(orig).lower()


async def run_serializable(
    session_factory: async_sessionmaker[AsyncSession],
    work: Callable[[AsyncSession], Awaitable[T]],
    *,
    attempts: int | None = None,
) -> T:
    """
    Runs `work` inside one serializable transaction, retrying the whole unit
    on conflict. Business exceptions raised by `work` roll back and propagate
    on the first attempt.
    """
    attempts = attempts or settings.TX_MAX_ATTEMPTS
    for attempt in range(1, attempts + 1):
        async with session_factory() as session:
            try:
                async with session.begin():
                    return await work(session)
            except DBAPIError as e:
                if not is_retryable(e) or attempt == attempts:
                    raise
                logger.warning(
                    "[DB] Transaction conflict (attempt %d/%d): %s",
                    attempt, attempts, e.orig,
                )
        delay = settings.TX_RETRY_BASE_DELAY * attempt
        await asyncio.sleep(delay + random.uniform(0, delay))
    raise RuntimeError("unreachable")
