"""
Transactional outbox.

Events are written in the same transaction as the business change that
produced them, then delivered asynchronously by `OutboxDispatcher`, which
runs under a distributed lock so exactly one instance drains the queue at
a time. Delivery is at-least-once; consumers dedupe on the event id.
"""
import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional
from uuid import UUID

from sqlalchemy import and_, delete, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ordercore.config import settings
from ordercore.db import utcnow
from ordercore.locks import LockService, hold
from ordercore.messaging import EventPublisher
from ordercore.models import EventType, OutboxEvent, OutboxStatus
from ordercore.schemas import DomainEvent, domain_event_adapter

logger = logging.getLogger("ordercore.outbox")

PROCESSOR_LOCK = "outbox:processor"
CLEANUP_LOCK = "outbox:cleanup"

# every EventType must be routed; tests assert the table is exhaustive
ROUTES: Dict[EventType, str] = {
    EventType.ORDER_CREATED: "order.created",
    EventType.PAYMENT_SUCCESS: "payment.success",
    EventType.STOCK_DEDUCTED: "stock.deducted",
    EventType.ORDER_STATUS_CHANGED: "order.status_changed",
    EventType.ORDER_CANCELLED: "order.cancelled",
}


def _to_row(event: DomainEvent) -> OutboxEvent:
    return OutboxEvent(
        type=event.event_type,
        payload=event.model_dump(mode="json", exclude={"event_type"}),
        status=OutboxStatus.PENDING,
        retries=0,
        created_at=utcnow(),
    )


def write_event(session: AsyncSession, event: DomainEvent) -> OutboxEvent:
    """Adds the event to the caller's transaction; it commits or rolls back with it."""
    row = _to_row(event)
    session.add(row)
    return row


async def write_event_direct(
    session_factory: async_sessionmaker[AsyncSession],
    event: DomainEvent,
) -> UUID:
    async with session_factory() as session:
        row = _to_row(event)
        session.add(row)
        await session.commit()
        return row.id


def parse_event(row: OutboxEvent) -> DomainEvent:
    return domain_event_adapter.validate_python({"event_type": row.type, **row.payload})


class OutboxDispatcher:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        locks: LockService,
        publisher: EventPublisher,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.locks = locks
        self.publisher = publisher
        self.clock = clock

    async def process_outbox(self, now: Optional[datetime] = None) -> int:
        """One dispatch run. Returns the number of events completed."""
        async with hold(self.locks, PROCESSOR_LOCK, settings.OUTBOX_LOCK_TTL) as acquired:
            if not acquired:
                return 0
            started = self.clock()
            budget = settings.OUTBOX_LOCK_TTL - settings.OUTBOX_LEASE_MARGIN

            await self._recover_interrupted()

            async with self.session_factory() as session:
                result = await session.execute(
                    select(OutboxEvent)
                    .where(
                        or_(
                            OutboxEvent.status == OutboxStatus.PENDING,
                            and_(
                                OutboxEvent.status == OutboxStatus.FAILED,
                                OutboxEvent.retries < settings.OUTBOX_MAX_RETRIES,
                            ),
                        )
                    )
                    .order_by(OutboxEvent.created_at)
                    .limit(settings.OUTBOX_BATCH_SIZE)
                )
                events = result.scalars().all()

            completed = 0
            for index, event in enumerate(events):
                # stay inside the lock lease
                if (self.clock() - started).total_seconds() >= budget:
                    logger.warning(
                        "[Outbox] Lock lease nearly used up, deferring %d events to the next run",
                        len(events) - index,
                    )
                    break
                if await self._process_event(event, now):
                    completed += 1

            if events:
                logger.info("[Outbox] Processed %d/%d events", completed, len(events))
            return completed

    async def _recover_interrupted(self) -> None:
        # We hold the processor lock, so anything still PROCESSING belongs to a
        # run that died mid-delivery. Count it as a failed attempt.
        async with self.session_factory() as session:
            result = await session.execute(
                update(OutboxEvent)
                .where(OutboxEvent.status == OutboxStatus.PROCESSING)
                .values(
                    status=OutboxStatus.FAILED,
                    retries=OutboxEvent.retries + 1,
                    last_error="Interrupted while processing",
                )
            )
            await session.commit()
            if result.rowcount:
                logger.warning("[Outbox] Recovered %d interrupted events", result.rowcount)

    async def _process_event(self, event: OutboxEvent, now: Optional[datetime]) -> bool:
        async with self.session_factory() as session:
            await session.execute(
                update(OutboxEvent)
                .where(OutboxEvent.id == event.id)
                .values(status=OutboxStatus.PROCESSING)
            )
            await session.commit()

            try:
                await self.execute_side_effect(event)
            except Exception as e:
                await session.execute(
                    update(OutboxEvent)
                    .where(OutboxEvent.id == event.id)
                    .values(
                        status=OutboxStatus.FAILED,
                        retries=event.retries + 1,
                        last_error=str(e) or type(e).__name__,
                    )
                )
                await session.commit()
                logger.error(
                    "[Outbox] Event %s (%s) failed: %s", event.id, event.type.value, e,
                    exc_info=True,
                )
                if event.retries + 1 >= settings.OUTBOX_MAX_RETRIES:
                    logger.error(
                        "[Outbox] Event %s reached %d retries, left for manual inspection",
                        event.id, settings.OUTBOX_MAX_RETRIES,
                    )
                return False

            await session.execute(
                update(OutboxEvent)
                .where(OutboxEvent.id == event.id)
                .values(status=OutboxStatus.COMPLETED, processed_at=now or utcnow())
            )
            await session.commit()
            logger.debug("[Outbox] Event %s (%s) processed", event.id, event.type.value)
            return True

    async def execute_side_effect(self, event: OutboxEvent) -> None:
        # validates the stored payload against its typed model before publishing
        parsed = parse_event(event)
        routing_key = ROUTES[parsed.event_type]
        await self.publisher.publish(
            routing_key,
            parsed.model_dump(mode="json"),
            message_id=str(event.id),
        )
        logger.info("[Outbox] Published %s for event %s", routing_key, event.id)

    async def cleanup_completed(self, now: Optional[datetime] = None) -> int:
        cutoff = (now or utcnow()) - timedelta(days=settings.OUTBOX_RETENTION_DAYS)
        async with hold(self.locks, CLEANUP_LOCK, settings.OUTBOX_LOCK_TTL) as acquired:
            if not acquired:
                return 0
            async with self.session_factory() as session:
                result = await session.execute(
                    delete(OutboxEvent).where(
                        OutboxEvent.status == OutboxStatus.COMPLETED,
                        OutboxEvent.processed_at < cutoff,
                    )
                )
                await session.commit()
        if result.rowcount:
            logger.info("[Outbox] Cleaned up %d old outbox events", result.rowcount)
        return result.rowcount

    async def failed_events(self) -> List[OutboxEvent]:
        """Events that exhausted their retries and wait for a human."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(OutboxEvent)
                .where(
                    OutboxEvent.status == OutboxStatus.FAILED,
                    OutboxEvent.retries >= settings.OUTBOX_MAX_RETRIES,
                )
                .order_by(OutboxEvent.created_at)
            )
            return list(result.scalars().all())
