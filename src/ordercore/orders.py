"""
Order aggregate and its status state machine.

    PENDING -> CONFIRMED -> PACKED -> OUT_FOR_DELIVERY -> DELIVERED -> REFUNDED
       \\___________\\___________\\______________\\
                                                  -> CANCELLED

Every transition stamps its timestamp, appends a history row and writes an
outbox event in the same transaction. Cancelling always puts the order's
stock back.
"""
import logging
import secrets
import string
import uuid
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, FrozenSet, Iterable, Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ordercore import inventory, outbox
from ordercore.config import settings
from ordercore.db import run_serializable, utcnow
from ordercore.errors import BadRequestError, InvalidTransition, OrderNotFound, OutOfStock, ProductNotFound
from ordercore.models import (
    Order, OrderItem, OrderStatus, OrderStatusHistory, Payment, PaymentMethod,
    PaymentStatus, Product,
)
from ordercore.schemas import (
    LineItem, OrderCancelled, OrderCreated, OrderCreateRequest, OrderStatusChanged,
    PartialFulfillmentResult, PaymentSucceeded,
)

logger = logging.getLogger("ordercore.orders")

CENT = Decimal("0.01")
SYSTEM_ACTOR = "system"
ORDER_NUMBER_ALPHABET = string.ascii_uppercase + string.digits

TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.CONFIRMED, OrderStatus.CANCELLED}),
    OrderStatus.CONFIRMED: frozenset({OrderStatus.PACKED, OrderStatus.CANCELLED}),
    OrderStatus.PACKED: frozenset({OrderStatus.OUT_FOR_DELIVERY, OrderStatus.CANCELLED}),
    OrderStatus.OUT_FOR_DELIVERY: frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED}),
    OrderStatus.DELIVERED: frozenset({OrderStatus.REFUNDED}),
    OrderStatus.CANCELLED: frozenset(),
    OrderStatus.REFUNDED: frozenset(),
}

TIMESTAMP_FIELDS = {
    OrderStatus.CONFIRMED: "confirmed_at",
    OrderStatus.PACKED: "packed_at",
    OrderStatus.OUT_FOR_DELIVERY: "dispatched_at",
    OrderStatus.DELIVERED: "delivered_at",
    OrderStatus.CANCELLED: "cancelled_at",
    OrderStatus.REFUNDED: "refunded_at",
}

TERMINAL_FOR_MODIFICATION = {OrderStatus.DELIVERED, OrderStatus.CANCELLED, OrderStatus.REFUNDED}
CUSTOMER_CANCELLABLE = {OrderStatus.PENDING, OrderStatus.CONFIRMED}


def generate_order_number(now: datetime) -> str:
    suffix = "".join(secrets.choice(ORDER_NUMBER_ALPHABET) for _ in range(6))
    return f"QM{now:%Y%m%d}{suffix}"


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    return target in TRANSITIONS[current]


def _merge_lines(items: Iterable[LineItem]) -> list[LineItem]:
    quantities: Dict[UUID, int] = {}
    for item in items:
        quantities[item.product_id] = quantities.get(item.product_id, 0) + item.quantity
    return [LineItem(product_id=pid, quantity=qty) for pid, qty in quantities.items()]


async def get_order(session: AsyncSession, order_id: UUID, user_id: Optional[UUID] = None) -> Order:
    query = select(Order).where(Order.id == order_id)
    if user_id is not None:
        query = query.where(Order.user_id == user_id)
    order = (await session.execute(query)).scalar_one_or_none()
    if order is None:
        raise OrderNotFound(order_id)
    return order


async def load_order(
    session_factory: async_sessionmaker[AsyncSession],
    order_id: UUID,
    user_id: Optional[UUID] = None,
) -> Order:
    async with session_factory() as session:
        return await get_order(session, order_id, user_id)


async def place_order(
    session_factory: async_sessionmaker[AsyncSession],
    user_id: UUID,
    request: OrderCreateRequest,
    now: Optional[datetime] = None,
) -> Order:
    """
    Checkout. Stock reservation, the order with its items, payment and first
    history row, and the ORDER_CREATED event all commit together or not at all.
    """
    if not request.items:
        raise BadRequestError("Cart is empty")
    lines = _merge_lines(request.items)

    async def work(session: AsyncSession) -> UUID:
        created_at = now or utcnow()
        result = await session.execute(
            select(Product)
            .where(Product.id.in_([line.product_id for line in lines]))
            .execution_options(populate_existing=True)
        )
        products = {p.id: p for p in result.scalars().all()}

        priced = []
        subtotal = Decimal("0")
        for line in lines:
            product = products.get(line.product_id)
            if product is None:
                raise ProductNotFound(line.product_id)
            if not product.is_available:
                raise BadRequestError(f"{product.name} is no longer available")
            effective = product.discounted_price or product.price
            line_total = (effective * line.quantity).quantize(CENT)
            subtotal += line_total
            priced.append((line, product, line_total))

        if subtotal < settings.MIN_ORDER_AMOUNT:
            raise BadRequestError(f"Minimum order amount is {settings.MIN_ORDER_AMOUNT}")

        delivery_fee = Decimal("0") if subtotal >= settings.FREE_DELIVERY_THRESHOLD else settings.DELIVERY_FEE
        tax = Decimal("0") if settings.TAX_INCLUSIVE else (subtotal * settings.TAX_RATE / 100).quantize(CENT)
        total = subtotal + delivery_fee + tax

        # a new checkout supersedes the owner's loose holds on the same products
        await inventory.release_user_reservations(
            session, user_id, product_ids=list(products), unattached_only=True, now=created_at
        )

        order = Order(
            id=uuid.uuid4(),
            order_number=generate_order_number(created_at),
            user_id=user_id,
            status=OrderStatus.PENDING,
            payment_method=request.payment_method,
            subtotal=subtotal,
            delivery_fee=delivery_fee,
            discount=Decimal("0"),
            tax=tax,
            total=total,
            notes=request.notes,
            estimated_delivery=created_at + timedelta(minutes=settings.ESTIMATED_DELIVERY_MINUTES),
            created_at=created_at,
            updated_at=created_at,
        )
        order.items = [
            OrderItem(
                position=position,
                product_id=product.id,
                product_snapshot={
                    "name": product.name,
                    "sku": product.sku,
                    "unit": product.unit,
                },
                quantity=line.quantity,
                unit_price=product.price,
                discounted_price=product.discounted_price,
                total=line_total,
            )
            for position, (line, product, line_total) in enumerate(priced)
        ]
        order.payment = Payment(
            amount=total,
            currency=settings.CURRENCY,
            method=request.payment_method,
            status=PaymentStatus.PENDING,
            created_at=created_at,
            updated_at=created_at,
        )
        order.status_history = [
            OrderStatusHistory(
                status=OrderStatus.PENDING,
                notes="Order placed",
                changed_by=str(user_id),
                created_at=created_at,
            )
        ]
        session.add(order)
        await session.flush()

        await inventory.reserve_in_session(session, user_id, lines, order_id=order.id, now=created_at)

        outbox.write_event(
            session,
            OrderCreated(
                order_id=order.id,
                order_number=order.order_number,
                user_id=user_id,
                total=total,
                payment_method=request.payment_method,
            ),
        )

        # paid at the door: nothing to wait for, the goods are sold now
        if request.payment_method == PaymentMethod.CASH_ON_DELIVERY:
            await inventory.convert_reservations(session, order.id, user_id, now=created_at)

        return order.id

    order_id = await run_serializable(session_factory, work)
    logger.info("[Orders] Order %s created for user %s", order_id, user_id)
    return await load_order(session_factory, order_id)


async def transition(
    session: AsyncSession,
    order: Order,
    target: OrderStatus,
    notes: Optional[str] = None,
    changed_by: Optional[str] = None,
    now: Optional[datetime] = None,
    automated: bool = False,
) -> None:
    """Applies one state-machine step inside the caller's transaction."""
    now = now or utcnow()
    previous = order.status
    if not can_transition(previous, target):
        raise InvalidTransition(previous.value, target.value)

    if target == OrderStatus.CONFIRMED:
        if not await inventory.re_reserve_if_needed(session, order, now=now):
            raise OutOfStock("", detail="Stock for this order is no longer available")

    order.status = target
    setattr(order, TIMESTAMP_FIELDS[target], now)
    order.updated_at = now
    order.status_history.append(
        OrderStatusHistory(status=target, notes=notes, changed_by=changed_by, created_at=now)
    )

    if target == OrderStatus.CANCELLED:
        order.cancellation_reason = notes
        await inventory.restore_order_stock(session, order, now=now)
        outbox.write_event(
            session,
            OrderCancelled(
                order_id=order.id,
                order_number=order.order_number,
                user_id=order.user_id,
                reason=notes,
                automated=automated,
            ),
        )
    else:
        if target == OrderStatus.REFUNDED and order.payment is not None:
            order.payment.status = PaymentStatus.REFUNDED
            order.payment.refund_amount = order.payment.amount
            order.payment.refunded_at = now
        outbox.write_event(
            session,
            OrderStatusChanged(
                order_id=order.id,
                order_number=order.order_number,
                user_id=order.user_id,
                previous_status=previous,
                new_status=target,
            ),
        )

    await session.flush()
    logger.info(
        "[Orders] Order %s: %s -> %s (by %s)",
        order.id, previous.value, target.value, changed_by or SYSTEM_ACTOR,
    )


async def update_status(
    session_factory: async_sessionmaker[AsyncSession],
    order_id: UUID,
    status: OrderStatus,
    notes: Optional[str] = None,
    changed_by: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Order:
    async def work(session: AsyncSession) -> None:
        order = await get_order(session, order_id)
        await transition(session, order, status, notes=notes, changed_by=changed_by, now=now)

    await run_serializable(session_factory, work)
    return await load_order(session_factory, order_id)


async def cancel_order(
    session_factory: async_sessionmaker[AsyncSession],
    order_id: UUID,
    user_id: UUID,
    reason: str,
    now: Optional[datetime] = None,
) -> Order:
    """Customer-initiated cancel; only before the order is packed."""
    async def work(session: AsyncSession) -> None:
        order = await get_order(session, order_id, user_id)
        if order.status not in CUSTOMER_CANCELLABLE:
            raise BadRequestError("Order cannot be cancelled at this stage")
        await transition(
            session, order, OrderStatus.CANCELLED, notes=reason, changed_by=str(user_id), now=now
        )

    await run_serializable(session_factory, work)
    return await load_order(session_factory, order_id)


async def apply_payment_success(
    session: AsyncSession,
    order: Order,
    gateway_payment_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> None:
    now = now or utcnow()
    payment = order.payment
    if payment.status in (PaymentStatus.COMPLETED, PaymentStatus.REFUNDED):
        logger.info("[Orders] Payment for order %s already recorded, ignoring", order.id)
        return

    payment.status = PaymentStatus.COMPLETED
    payment.paid_at = now
    payment.gateway_payment_id = gateway_payment_id
    payment.updated_at = now
    outbox.write_event(
        session,
        PaymentSucceeded(
            order_id=order.id,
            order_number=order.order_number,
            user_id=order.user_id,
            amount=payment.amount,
            gateway_payment_id=gateway_payment_id,
        ),
    )

    if order.status == OrderStatus.CANCELLED:
        # money arrived after the order was unwound: owe it back
        payment.refund_amount = payment.amount
        payment.refund_metadata = {"reason": "Payment received for a cancelled order"}
        logger.warning("[Orders] Payment received for cancelled order %s, refund owed", order.id)
        await session.flush()
        return

    if order.status != OrderStatus.PENDING:
        await session.flush()
        return

    if await inventory.re_reserve_if_needed(session, order, now=now):
        await transition(
            session, order, OrderStatus.CONFIRMED,
            notes="Payment received", changed_by=SYSTEM_ACTOR, now=now,
        )
        return

    payment.refund_amount = payment.amount
    payment.refund_metadata = {"reason": "Stock unavailable after reservation expiry"}
    await transition(
        session, order, OrderStatus.CANCELLED,
        notes="Stock unavailable after payment", changed_by=SYSTEM_ACTOR, now=now, automated=True,
    )


async def apply_payment_failure(
    session: AsyncSession,
    order: Order,
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
) -> None:
    """The order stays PENDING; the auto-cancel sweeper unwinds it if no payment follows."""
    payment = order.payment
    if payment.status in (PaymentStatus.COMPLETED, PaymentStatus.REFUNDED):
        logger.warning("[Orders] Ignoring failure callback for settled payment of order %s", order.id)
        return
    payment.status = PaymentStatus.FAILED
    payment.failure_reason = reason
    payment.updated_at = now or utcnow()
    await session.flush()


async def confirm_payment(
    session_factory: async_sessionmaker[AsyncSession],
    order_id: UUID,
    gateway_payment_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Order:
    async def work(session: AsyncSession) -> None:
        order = await get_order(session, order_id)
        await apply_payment_success(session, order, gateway_payment_id, now=now)

    await run_serializable(session_factory, work)
    return await load_order(session_factory, order_id)


async def fail_payment(
    session_factory: async_sessionmaker[AsyncSession],
    order_id: UUID,
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Order:
    async def work(session: AsyncSession) -> None:
        order = await get_order(session, order_id)
        await apply_payment_failure(session, order, reason, now=now)

    await run_serializable(session_factory, work)
    return await load_order(session_factory, order_id)


async def partial_fulfillment(
    session_factory: async_sessionmaker[AsyncSession],
    order_id: UUID,
    item_ids: Iterable[UUID],
    actor: str,
    now: Optional[datetime] = None,
) -> PartialFulfillmentResult:
    """Drops unavailable lines from a live order and settles stock and money for them."""
    removed_ids = set(item_ids)

    async def work(session: AsyncSession) -> PartialFulfillmentResult:
        ts = now or utcnow()
        order = await get_order(session, order_id)
        if order.status in TERMINAL_FOR_MODIFICATION:
            raise BadRequestError("Cannot modify order in current status")

        to_remove = [item for item in order.items if item.id in removed_ids]
        remaining = [item for item in order.items if item.id not in removed_ids]
        if not to_remove:
            raise BadRequestError("None of the given items belong to this order")
        if not remaining:
            raise BadRequestError("Cannot remove all items. Cancel the order instead.")

        refund_amount = sum((item.total for item in to_remove), Decimal("0"))
        await inventory.restore_order_stock(session, order, items=to_remove, now=ts)
        for item in to_remove:
            order.items.remove(item)

        old_subtotal = order.subtotal
        new_subtotal = sum((item.total for item in remaining), Decimal("0"))
        if old_subtotal > 0:
            order.tax = (order.tax * new_subtotal / old_subtotal).quantize(CENT)
        order.subtotal = new_subtotal
        order.total = new_subtotal + order.delivery_fee - order.discount + order.tax
        order.updated_at = ts

        payment = order.payment
        if payment.status == PaymentStatus.COMPLETED and refund_amount > 0:
            payment.refund_amount = (payment.refund_amount or Decimal("0")) + refund_amount
            payment.refunded_at = ts
            payment.refund_metadata = {
                "partial_refund": True,
                "removed_items": sorted(str(i.id) for i in to_remove),
            }
        elif payment.status in (PaymentStatus.PENDING, PaymentStatus.FAILED):
            payment.amount = order.total
        payment.updated_at = ts

        order.status_history.append(
            OrderStatusHistory(
                status=order.status,
                notes=f"Partial fulfillment: {len(to_remove)} item(s) removed. Refund: {refund_amount}",
                changed_by=actor,
                created_at=ts,
            )
        )
        outbox.write_event(
            session,
            OrderStatusChanged(
                order_id=order.id,
                order_number=order.order_number,
                user_id=order.user_id,
                previous_status=order.status,
                new_status=order.status,
                action="PARTIAL_FULFILLMENT",
                removed_items=[item.id for item in to_remove],
                refund_amount=refund_amount,
            ),
        )
        await session.flush()
        return PartialFulfillmentResult(
            order_id=order.id, removed_items=len(to_remove), refund_amount=refund_amount
        )

    result = await run_serializable(session_factory, work)
    logger.info(
        "[Orders] Partial fulfillment on order %s by %s: %d item(s), refund %s",
        order_id, actor, result.removed_items, result.refund_amount,
    )
    return result
