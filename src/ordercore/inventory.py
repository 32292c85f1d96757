"""
Inventory ledger: per-product stock counters plus the reservation log.

available = stock_quantity - reserved_quantity

A reservation is a time-bounded hold on available stock. It ends exactly
once, either released (hold returned to availability) or converted (held
units become sold units, so both counters drop and availability does not
move). Counter changes are guarded conditional UPDATEs, checked by row
count, so two concurrent checkouts can never both take the last unit.

Functions taking a session join the caller's transaction and never commit.
"""
import logging
from datetime import datetime, timedelta
from typing import Iterable, List, Optional, Sequence
from uuid import UUID

from sqlalchemy import and_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ordercore import outbox
from ordercore.config import settings
from ordercore.db import run_serializable, utcnow
from ordercore.errors import BadRequestError, OutOfStock, ProductNotFound
from ordercore.locks import LockService, hold
from ordercore.models import InventoryReservation, Order, Product
from ordercore.schemas import LineItem, StockDeducted

logger = logging.getLogger("ordercore.inventory")

CLEANUP_LOCK = "inventory:reservation-cleanup"

_active = and_(
    InventoryReservation.released_at.is_(None),
    InventoryReservation.converted_at.is_(None),
)


async def reserve_in_session(
    session: AsyncSession,
    owner: UUID,
    items: Sequence[LineItem],
    *,
    order_id: Optional[UUID] = None,
    session_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> List[InventoryReservation]:
    """All-or-nothing: any failing item raises and the caller's transaction rolls back."""
    now = now or utcnow()
    expires_at = now + timedelta(minutes=settings.RESERVATION_TTL_MINUTES)
    reservations = []

    for item in items:
        product = await session.get(Product, item.product_id, populate_existing=True)
        if product is None:
            raise ProductNotFound(item.product_id)
        if not product.is_available:
            raise BadRequestError(f"{product.name} is no longer available")

        available = product.available_quantity
        if available < item.quantity:
            raise OutOfStock(product.name, max(available, 0))

        result = await session.execute(
            update(Product)
            .where(
                Product.id == item.product_id,
                Product.stock_quantity - Product.reserved_quantity >= item.quantity,
            )
            .values(reserved_quantity=Product.reserved_quantity + item.quantity)
        )
        if result.rowcount != 1:
            # a concurrent checkout took the stock between the read and the update
            raise OutOfStock(product.name, 0)

        reservation = InventoryReservation(
            product_id=item.product_id,
            owner=owner,
            session_id=session_id,
            order_id=order_id,
            quantity=item.quantity,
            created_at=now,
            expires_at=expires_at,
        )
        session.add(reservation)
        reservations.append(reservation)

    await session.flush()
    return reservations


async def reserve_stock(
    session_factory: async_sessionmaker[AsyncSession],
    owner: UUID,
    items: Sequence[LineItem],
    session_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> List[UUID]:
    async def work(session: AsyncSession) -> List[UUID]:
        reservations = await reserve_in_session(
            session, owner, items, session_id=session_id, now=now
        )
        return [r.id for r in reservations]

    ids = await run_serializable(session_factory, work)
    logger.info("[Inventory] Reserved stock for %d items, owner %s", len(items), owner)
    return ids


async def _release_one(session: AsyncSession, reservation: InventoryReservation, now: datetime) -> bool:
    marked = await session.execute(
        update(InventoryReservation)
        .where(InventoryReservation.id == reservation.id, _active)
        .values(released_at=now)
    )
    if marked.rowcount != 1:
        return False
    await session.execute(
        update(Product)
        .where(Product.id == reservation.product_id)
        .values(reserved_quantity=Product.reserved_quantity - reservation.quantity)
    )
    return True


async def _convert_one(
    session: AsyncSession,
    reservation: InventoryReservation,
    order_id: UUID,
    now: datetime,
) -> bool:
    marked = await session.execute(
        update(InventoryReservation)
        .where(InventoryReservation.id == reservation.id, _active)
        .values(converted_at=now, order_id=order_id)
    )
    if marked.rowcount != 1:
        return False
    await session.execute(
        update(Product)
        .where(Product.id == reservation.product_id)
        .values(
            reserved_quantity=Product.reserved_quantity - reservation.quantity,
            stock_quantity=Product.stock_quantity - reservation.quantity,
        )
    )
    outbox.write_event(
        session,
        StockDeducted(
            product_id=reservation.product_id,
            order_id=order_id,
            quantity=reservation.quantity,
        ),
    )
    return True


async def convert_reservations(
    session: AsyncSession,
    order_id: UUID,
    owner: UUID,
    now: Optional[datetime] = None,
) -> int:
    """Turns the active holds backing an order into sold stock."""
    now = now or utcnow()
    result = await session.execute(
        select(InventoryReservation).where(
            InventoryReservation.order_id == order_id,
            InventoryReservation.owner == owner,
            _active,
        )
    )
    converted = 0
    for reservation in result.scalars().all():
        if await _convert_one(session, reservation, order_id, now):
            converted += 1

    if converted:
        logger.info("[Inventory] Converted %d reservations for order %s", converted, order_id)
    return converted


async def release_reservations(
    session: AsyncSession,
    reservation_ids: Iterable[UUID],
    now: Optional[datetime] = None,
) -> int:
    """Unknown ids and reservations that already ended are skipped."""
    now = now or utcnow()
    ids = list(reservation_ids)
    if not ids:
        return 0
    result = await session.execute(
        select(InventoryReservation).where(InventoryReservation.id.in_(ids))
    )
    released = 0
    for reservation in result.scalars().all():
        if await _release_one(session, reservation, now):
            released += 1
    return released


async def release_user_reservations(
    session: AsyncSession,
    owner: UUID,
    product_ids: Optional[Iterable[UUID]] = None,
    unattached_only: bool = False,
    now: Optional[datetime] = None,
) -> int:
    query = select(InventoryReservation.id).where(InventoryReservation.owner == owner, _active)
    if product_ids is not None:
        query = query.where(InventoryReservation.product_id.in_(list(product_ids)))
    if unattached_only:
        query = query.where(InventoryReservation.order_id.is_(None))
    ids = (await session.execute(query)).scalars().all()
    return await release_reservations(session, ids, now=now)


async def release_expired_reservations(
    session_factory: async_sessionmaker[AsyncSession],
    locks: LockService,
    now: Optional[datetime] = None,
) -> int:
    """Safety net for crashes between reserve and pay. One transaction per reservation."""
    now = now or utcnow()
    async with hold(locks, CLEANUP_LOCK, settings.RESERVATION_SWEEP_LOCK_TTL) as acquired:
        if not acquired:
            return 0

        async with session_factory() as session:
            result = await session.execute(
                select(InventoryReservation)
                .where(InventoryReservation.expires_at < now, _active)
                .order_by(InventoryReservation.expires_at)
                .limit(settings.RESERVATION_SWEEP_BATCH)
            )
            expired = result.scalars().all()

        released = 0
        for reservation in expired:
            try:
                async with session_factory() as session:
                    async with session.begin():
                        if await _release_one(session, reservation, now):
                            released += 1
            except Exception:
                # next run picks it up again
                logger.error(
                    "[Inventory] Failed to release expired reservation %s",
                    reservation.id, exc_info=True,
                )

        if released:
            logger.info("[Inventory] Released %d expired inventory reservations", released)
        return released


async def re_reserve_if_needed(
    session: AsyncSession,
    order: Order,
    now: Optional[datetime] = None,
) -> bool:
    """
    Settles the stock for an order whose payment just arrived.

    Lines whose hold is still active are converted; lines whose hold already
    expired are re-validated and re-reserved before converting. Returns False,
    having changed nothing, when the expired lines can no longer be covered.
    """
    now = now or utcnow()
    result = await session.execute(
        select(InventoryReservation).where(InventoryReservation.order_id == order.id)
    )
    by_product: dict = {}
    for reservation in result.scalars().all():
        by_product.setdefault(reservation.product_id, []).append(reservation)

    missing = []
    for item in order.items:
        held = by_product.get(item.product_id, [])
        if any(r.converted_at is not None or r.is_active for r in held):
            continue
        missing.append(LineItem(product_id=item.product_id, quantity=item.quantity))

    for line in missing:
        product = await session.get(Product, line.product_id, populate_existing=True)
        if product is None or not product.is_available or product.available_quantity < line.quantity:
            logger.warning(
                "[Inventory] Stock for order %s expired and cannot be re-reserved (product %s)",
                order.id, line.product_id,
            )
            return False

    if missing:
        await reserve_in_session(session, order.user_id, missing, order_id=order.id, now=now)
        logger.info("[Inventory] Re-reserved %d lines for order %s after expiry", len(missing), order.id)

    await convert_reservations(session, order.id, order.user_id, now=now)
    return True


async def restore_order_stock(
    session: AsyncSession,
    order: Order,
    items: Optional[Iterable] = None,
    now: Optional[datetime] = None,
) -> int:
    """
    Inverse of checkout for the given order lines (all lines by default):
    sold units go back on the shelf, active holds are released, and lines
    whose hold already expired need nothing. Returns the units made available.
    """
    now = now or utcnow()
    lines = list(order.items if items is None else items)
    result = await session.execute(
        select(InventoryReservation).where(InventoryReservation.order_id == order.id)
    )
    by_product: dict = {}
    for reservation in result.scalars().all():
        by_product.setdefault(reservation.product_id, []).append(reservation)

    restored = 0
    for item in lines:
        held = by_product.get(item.product_id, [])
        if any(r.converted_at is not None for r in held):
            await session.execute(
                update(Product)
                .where(Product.id == item.product_id)
                .values(stock_quantity=Product.stock_quantity + item.quantity)
            )
            restored += item.quantity
            continue
        for reservation in held:
            if reservation.is_active and await _release_one(session, reservation, now):
                restored += reservation.quantity

    return restored
