import asyncio
import uuid
from datetime import timedelta

import pytest
from sqlalchemy import select

from ordercore import inventory
from ordercore.db import utcnow
from ordercore.errors import BadRequestError, OutOfStock, ProductNotFound
from ordercore.models import InventoryReservation
from ordercore.schemas import LineItem


async def _reservations(session_factory, owner=None):
    query = select(InventoryReservation)
    if owner is not None:
        query = query.where(InventoryReservation.owner == owner)
    async with session_factory() as session:
        return list((await session.execute(query)).scalars().all())


async def test_reserve_moves_units_from_available_to_reserved(session_factory, make_product, get_product):
    product = await make_product(stock=5)
    owner = uuid.uuid4()

    ids = await inventory.reserve_stock(session_factory, owner, [LineItem(product_id=product.id, quantity=2)])

    assert len(ids) == 1
    stored = await get_product(product.id)
    assert stored.stock_quantity == 5
    assert stored.reserved_quantity == 2
    assert stored.available_quantity == 3


async def test_reservation_expires_after_fifteen_minutes(session_factory, make_product):
    product = await make_product(stock=5)
    now = utcnow()

    await inventory.reserve_stock(
        session_factory, uuid.uuid4(), [LineItem(product_id=product.id, quantity=1)], now=now
    )

    (reservation,) = await _reservations(session_factory)
    assert reservation.expires_at == now + timedelta(minutes=15)


async def test_out_of_stock_reports_available_quantity(session_factory, make_product):
    product = await make_product(stock=2, name="Bread")

    with pytest.raises(OutOfStock) as exc:
        await inventory.reserve_stock(session_factory, uuid.uuid4(), [LineItem(product_id=product.id, quantity=3)])

    assert exc.value.detail == "Only 2 of Bread available"


async def test_reserve_is_all_or_nothing(session_factory, make_product, get_product):
    plenty = await make_product(stock=10)
    scarce = await make_product(stock=1)

    with pytest.raises(OutOfStock):
        await inventory.reserve_stock(
            session_factory,
            uuid.uuid4(),
            [LineItem(product_id=plenty.id, quantity=4), LineItem(product_id=scarce.id, quantity=2)],
        )

    assert (await get_product(plenty.id)).reserved_quantity == 0
    assert await _reservations(session_factory) == []


async def test_unknown_and_unavailable_products_are_rejected(session_factory, make_product):
    hidden = await make_product(stock=10, is_available=False)

    with pytest.raises(ProductNotFound):
        await inventory.reserve_stock(session_factory, uuid.uuid4(), [LineItem(product_id=uuid.uuid4(), quantity=1)])
    with pytest.raises(BadRequestError):
        await inventory.reserve_stock(session_factory, uuid.uuid4(), [LineItem(product_id=hidden.id, quantity=1)])


async def test_concurrent_reservations_never_oversell(session_factory, make_product, get_product):
    product = await make_product(stock=3)

    async def attempt():
        try:
            await inventory.reserve_stock(session_factory, uuid.uuid4(), [LineItem(product_id=product.id, quantity=1)])
            return True
        except OutOfStock:
            return False

    results = await asyncio.gather(*(attempt() for _ in range(10)))

    assert sum(results) == 3
    stored = await get_product(product.id)
    assert stored.reserved_quantity == 3
    assert stored.available_quantity == 0


async def test_two_shoppers_race_for_the_last_unit(session_factory, make_product, get_product):
    product = await make_product(stock=1)
    alice, bob = uuid.uuid4(), uuid.uuid4()

    outcomes = await asyncio.gather(
        inventory.reserve_stock(session_factory, alice, [LineItem(product_id=product.id, quantity=1)]),
        inventory.reserve_stock(session_factory, bob, [LineItem(product_id=product.id, quantity=1)]),
        return_exceptions=True,
    )

    assert sum(isinstance(o, OutOfStock) for o in outcomes) == 1
    assert sum(isinstance(o, list) for o in outcomes) == 1
    assert (await get_product(product.id)).reserved_quantity == 1


async def test_release_is_terminal_and_skips_unknown_ids(session_factory, make_product, get_product):
    product = await make_product(stock=4)
    ids = await inventory.reserve_stock(session_factory, uuid.uuid4(), [LineItem(product_id=product.id, quantity=3)])

    async with session_factory() as session:
        async with session.begin():
            assert await inventory.release_reservations(session, ids + [uuid.uuid4()]) == 1
    async with session_factory() as session:
        async with session.begin():
            assert await inventory.release_reservations(session, ids) == 0

    assert (await get_product(product.id)).reserved_quantity == 0
    (reservation,) = await _reservations(session_factory)
    assert reservation.released_at is not None
    assert reservation.converted_at is None


async def test_release_user_reservations_only_touches_the_owner(session_factory, make_product, get_product):
    product = await make_product(stock=10)
    mine, theirs = uuid.uuid4(), uuid.uuid4()
    await inventory.reserve_stock(session_factory, mine, [LineItem(product_id=product.id, quantity=2)])
    await inventory.reserve_stock(session_factory, theirs, [LineItem(product_id=product.id, quantity=3)])

    async with session_factory() as session:
        async with session.begin():
            released = await inventory.release_user_reservations(session, mine)

    assert released == 1
    assert (await get_product(product.id)).reserved_quantity == 3


async def test_released_hold_can_be_taken_by_another_shopper(session_factory, make_product, get_product):
    product = await make_product(stock=5)
    alice, bob = uuid.uuid4(), uuid.uuid4()
    await inventory.reserve_stock(session_factory, alice, [LineItem(product_id=product.id, quantity=5)])

    with pytest.raises(OutOfStock):
        await inventory.reserve_stock(session_factory, bob, [LineItem(product_id=product.id, quantity=1)])

    async with session_factory() as session:
        async with session.begin():
            assert await inventory.release_user_reservations(session, alice) == 1
    assert (await get_product(product.id)).available_quantity == 5

    ids = await inventory.reserve_stock(session_factory, bob, [LineItem(product_id=product.id, quantity=1)])
    assert len(ids) == 1
    assert (await get_product(product.id)).reserved_quantity == 1


async def test_expiry_sweeper_releases_only_expired_holds(session_factory, locks, make_product, get_product):
    product = await make_product(stock=10)
    start = utcnow()
    await inventory.reserve_stock(
        session_factory, uuid.uuid4(), [LineItem(product_id=product.id, quantity=2)], now=start
    )
    await inventory.reserve_stock(
        session_factory, uuid.uuid4(), [LineItem(product_id=product.id, quantity=3)],
        now=start + timedelta(minutes=10),
    )

    released = await inventory.release_expired_reservations(
        session_factory, locks, now=start + timedelta(minutes=16)
    )

    assert released == 1
    assert (await get_product(product.id)).reserved_quantity == 3
    assert not locks.is_held(inventory.CLEANUP_LOCK)


async def test_expiry_sweeper_skips_when_lock_is_held(session_factory, locks, make_product, get_product):
    product = await make_product(stock=10)
    start = utcnow()
    await inventory.reserve_stock(
        session_factory, uuid.uuid4(), [LineItem(product_id=product.id, quantity=2)], now=start
    )
    await locks.acquire(inventory.CLEANUP_LOCK, 30)

    released = await inventory.release_expired_reservations(
        session_factory, locks, now=start + timedelta(minutes=16)
    )

    assert released == 0
    assert (await get_product(product.id)).reserved_quantity == 2
