import uuid
from datetime import timedelta

from ordercore import lifecycle, orders
from ordercore.db import utcnow
from ordercore.models import EventType, OrderStatus, PaymentMethod
from ordercore.schemas import LineItem, OrderCreateRequest


async def _place(session_factory, product, method=PaymentMethod.RAZORPAY, now=None, quantity=1):
    return await orders.place_order(
        session_factory,
        uuid.uuid4(),
        OrderCreateRequest(items=[LineItem(product_id=product.id, quantity=quantity)], payment_method=method),
        now=now,
    )


async def test_unpaid_orders_are_cancelled_after_thirty_minutes(
    session_factory, locks, make_product, get_product, outbox_rows
):
    product = await make_product(stock=5)
    start = utcnow()
    stale = await _place(session_factory, product, now=start, quantity=2)
    recent = await _place(session_factory, product, now=start + timedelta(minutes=20))

    cancelled = await lifecycle.auto_cancel_unpaid_orders(
        session_factory, locks, now=start + timedelta(minutes=31)
    )

    assert cancelled == 1
    stale = await orders.load_order(session_factory, stale.id)
    assert stale.status == OrderStatus.CANCELLED
    assert stale.cancellation_reason == lifecycle.AUTO_CANCEL_REASON
    assert stale.status_history[-1].changed_by == "system"
    assert (await orders.load_order(session_factory, recent.id)).status == OrderStatus.PENDING
    assert (await get_product(product.id)).reserved_quantity == 1
    (event,) = await outbox_rows(EventType.ORDER_CANCELLED)
    assert event.payload["automated"] is True


async def test_auto_cancel_skips_cash_on_delivery_and_paid_orders(session_factory, locks, make_product):
    product = await make_product(stock=5)
    start = utcnow()
    cod = await _place(session_factory, product, method=PaymentMethod.CASH_ON_DELIVERY, now=start)
    paid = await _place(session_factory, product, now=start)
    await orders.confirm_payment(session_factory, paid.id, "pay_1", now=start + timedelta(minutes=1))

    cancelled = await lifecycle.auto_cancel_unpaid_orders(
        session_factory, locks, now=start + timedelta(minutes=45)
    )

    assert cancelled == 0
    assert (await orders.load_order(session_factory, cod.id)).status == OrderStatus.PENDING
    assert (await orders.load_order(session_factory, paid.id)).status == OrderStatus.CONFIRMED


async def test_auto_cancel_skips_when_lock_is_held(session_factory, locks, make_product):
    product = await make_product(stock=5)
    start = utcnow()
    order = await _place(session_factory, product, now=start)
    await locks.acquire(lifecycle.AUTO_CANCEL_LOCK, 60)

    assert await lifecycle.auto_cancel_unpaid_orders(session_factory, locks, now=start + timedelta(minutes=31)) == 0
    assert (await orders.load_order(session_factory, order.id)).status == OrderStatus.PENDING


async def test_sla_breach_is_flagged_once(session_factory, locks, make_product):
    product = await make_product(stock=5)
    start = utcnow()
    order = await _place(session_factory, product, method=PaymentMethod.CASH_ON_DELIVERY, now=start)
    await orders.update_status(session_factory, order.id, OrderStatus.CONFIRMED, now=start)

    assert await lifecycle.track_sla_breaches(session_factory, locks, now=start + timedelta(minutes=5)) == 0
    assert await lifecycle.track_sla_breaches(session_factory, locks, now=start + timedelta(minutes=11)) == 1
    assert await lifecycle.track_sla_breaches(session_factory, locks, now=start + timedelta(minutes=30)) == 0

    order = await orders.load_order(session_factory, order.id)
    assert order.sla_breached_at == start + timedelta(minutes=11)
    assert order.sla_breach_stage == "CONFIRMED"


async def test_packed_orders_have_a_shorter_sla(session_factory, locks, make_product):
    product = await make_product(stock=5)
    start = utcnow()
    order = await _place(session_factory, product, method=PaymentMethod.CASH_ON_DELIVERY, now=start)
    await orders.update_status(session_factory, order.id, OrderStatus.CONFIRMED, now=start)
    await orders.update_status(session_factory, order.id, OrderStatus.PACKED, now=start + timedelta(minutes=2))

    assert await lifecycle.track_sla_breaches(session_factory, locks, now=start + timedelta(minutes=8)) == 1
    order = await orders.load_order(session_factory, order.id)
    assert order.sla_breach_stage == "PACKED"
