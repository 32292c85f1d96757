import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ordercore.config import settings
from ordercore.db import run_serializable, utcnow
from ordercore.locks import LockService, hold
from ordercore.models import Order, OrderStatus, PaymentMethod, PaymentStatus
from ordercore.orders import SYSTEM_ACTOR, get_order, transition

logger = logging.getLogger("ordercore.lifecycle")

AUTO_CANCEL_LOCK = "order:lifecycle-processor:auto-cancel"
SLA_CHECK_LOCK = "order:lifecycle-processor:sla-check"

AUTO_CANCEL_REASON = "Auto-cancelled: payment not received within time limit"


async def auto_cancel_unpaid_orders(
    session_factory: async_sessionmaker[AsyncSession],
    locks: LockService,
    now: Optional[datetime] = None,
) -> int:
    """Cancels prepaid orders whose payment never arrived. Returns the number cancelled."""
    now = now or utcnow()
    async with hold(locks, AUTO_CANCEL_LOCK, settings.LIFECYCLE_LOCK_TTL) as acquired:
        if not acquired:
            return 0

        cutoff = now - timedelta(minutes=settings.UNPAID_AUTO_CANCEL_MINUTES)
        async with session_factory() as session:
            result = await session.execute(
                select(Order.id)
                .where(
                    Order.status == OrderStatus.PENDING,
                    Order.payment_method != PaymentMethod.CASH_ON_DELIVERY,
                    Order.created_at < cutoff,
                )
                .order_by(Order.created_at)
                .limit(settings.AUTO_CANCEL_BATCH)
            )
            order_ids = result.scalars().all()

        cancelled = 0
        for order_id in order_ids:

            async def work(session: AsyncSession, order_id=order_id) -> bool:
                order = await get_order(session, order_id)
                # re-checked in the transaction: the payment may have landed meanwhile
                if order.status != OrderStatus.PENDING:
                    return False
                if order.payment is not None and order.payment.status == PaymentStatus.COMPLETED:
                    return False
                await transition(
                    session, order, OrderStatus.CANCELLED,
                    notes=AUTO_CANCEL_REASON, changed_by=SYSTEM_ACTOR, now=now, automated=True,
                )
                return True

            try:
                if await run_serializable(session_factory, work):
                    cancelled += 1
            except Exception:
                logger.error("[Lifecycle] Failed to auto-cancel order %s", order_id, exc_info=True)

        if cancelled:
            logger.info("[Lifecycle] Auto-cancelled %d unpaid orders", cancelled)
        return cancelled


async def track_sla_breaches(
    session_factory: async_sessionmaker[AsyncSession],
    locks: LockService,
    now: Optional[datetime] = None,
) -> int:
    """Flags orders stuck in CONFIRMED or PACKED too long. Each order is flagged once."""
    now = now or utcnow()
    async with hold(locks, SLA_CHECK_LOCK, settings.LIFECYCLE_LOCK_TTL) as acquired:
        if not acquired:
            return 0

        stages = [
            (OrderStatus.CONFIRMED, Order.confirmed_at, settings.SLA_CONFIRMED_TO_PACKED_MINUTES),
            (OrderStatus.PACKED, Order.packed_at, settings.SLA_PACKED_TO_DISPATCHED_MINUTES),
        ]
        breached = 0
        async with session_factory() as session:
            for status, entered_at, minutes in stages:
                result = await session.execute(
                    update(Order)
                    .where(
                        Order.status == status,
                        entered_at < now - timedelta(minutes=minutes),
                        Order.sla_breached_at.is_(None),
                    )
                    .values(sla_breached_at=now, sla_breach_stage=status.value)
                )
                if result.rowcount:
                    logger.warning(
                        "[Lifecycle] %d orders breached the %s SLA (%d min)",
                        result.rowcount, status.value, minutes,
                    )
                breached += result.rowcount
            await session.commit()
        return breached
