"""
Shared fixtures: a fresh SQLite database per test, in-memory locks and a
publisher that records what it was asked to send.
"""
import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./ordercore-dev.db")
os.environ.setdefault("PUBLISH_EVENTS", "false")
os.environ.setdefault("RUN_WORKERS", "false")

import uuid
from decimal import Decimal
from typing import Optional

import httpx
import pytest
from sqlalchemy import select

from ordercore.db import build_engine, build_session_factory, create_schema
from ordercore.locks import InMemoryLockService
from ordercore.main import create_app
from ordercore.models import OutboxEvent, Product
from ordercore.tokens import create_access_token


class RecordingPublisher:
    def __init__(self):
        self.published = []
        self.fail_with: Optional[Exception] = None

    async def publish(self, routing_key, payload, message_id=None):
        if self.fail_with is not None:
            raise self.fail_with
        self.published.append((routing_key, payload, message_id))

    async def close(self):
        return None


@pytest.fixture
async def engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'ordercore.db'}")
    await create_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def locks():
    return InMemoryLockService()


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def make_product(session_factory):
    async def _make(stock=10, price="100.00", discounted_price=None, is_available=True, name=None):
        product = Product(
            id=uuid.uuid4(),
            sku=f"SKU-{uuid.uuid4().hex[:8]}",
            name=name or "Amul Milk 500ml",
            price=Decimal(price),
            discounted_price=Decimal(discounted_price) if discounted_price else None,
            unit="pack",
            is_available=is_available,
            stock_quantity=stock,
            reserved_quantity=0,
        )
        async with session_factory() as session:
            session.add(product)
            await session.commit()
        return product

    return _make


@pytest.fixture
def get_product(session_factory):
    async def _get(product_id):
        async with session_factory() as session:
            return await session.get(Product, product_id)

    return _get


@pytest.fixture
def outbox_rows(session_factory):
    async def _rows(event_type=None):
        query = select(OutboxEvent).order_by(OutboxEvent.created_at)
        if event_type is not None:
            query = query.where(OutboxEvent.type == event_type)
        async with session_factory() as session:
            return list((await session.execute(query)).scalars().all())

    return _rows


@pytest.fixture
def app(session_factory, locks, publisher):
    return create_app(
        session_factory=session_factory,
        locks=locks,
        publisher=publisher,
        run_workers=False,
        create_tables=False,
    )


@pytest.fixture
async def client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.fixture
def auth_headers():
    def _headers(user_id, role="CUSTOMER"):
        return {"Authorization": f"Bearer {create_access_token(user_id, role)}"}

    return _headers
