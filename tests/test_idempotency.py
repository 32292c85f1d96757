import logging
from datetime import timedelta

import pytest
from sqlalchemy import select

from ordercore import idempotency
from ordercore.db import utcnow
from ordercore.errors import IdempotencyConflict
from ordercore.models import IdempotencyKey


def test_hash_ignores_key_order():
    assert idempotency.hash_payload({"a": 1, "b": [1, 2]}) == idempotency.hash_payload({"b": [1, 2], "a": 1})
    assert idempotency.hash_payload({"a": 1}) != idempotency.hash_payload({"a": 2})
    assert idempotency.hash_payload(None) == idempotency.hash_payload({})


class Counter:
    def __init__(self, result=None, error=None):
        self.calls = 0
        self.result = result if result is not None else {"ok": True}
        self.error = error

    async def __call__(self):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return {**self.result, "call": self.calls}


async def test_replay_returns_the_stored_response_without_running_again(session_factory):
    operation = Counter()

    first = await idempotency.run_idempotent(session_factory, "key-1", {"x": 1}, operation, status_code=201)
    second = await idempotency.run_idempotent(session_factory, "key-1", {"x": 1}, operation, status_code=201)

    assert first == second == (201, {"ok": True, "call": 1})
    assert operation.calls == 1


async def test_same_key_with_different_payload_conflicts(session_factory):
    await idempotency.run_idempotent(session_factory, "key-1", {"x": 1}, Counter())

    with pytest.raises(IdempotencyConflict):
        await idempotency.run_idempotent(session_factory, "key-1", {"x": 2}, Counter())


async def test_in_flight_request_conflicts(session_factory):
    fingerprint = idempotency.hash_payload({"x": 1})
    async with session_factory() as session:
        await idempotency.reserve(session, "key-1", fingerprint)

    with pytest.raises(IdempotencyConflict):
        await idempotency.run_idempotent(session_factory, "key-1", {"x": 1}, Counter())


async def test_losing_the_reserve_race_conflicts(session_factory):
    fingerprint = idempotency.hash_payload({"x": 1})
    async with session_factory() as session:
        await idempotency.reserve(session, "key-1", fingerprint)
    async with session_factory() as session:
        with pytest.raises(IdempotencyConflict):
            await idempotency.reserve(session, "key-1", fingerprint)


async def test_failed_operation_frees_the_key(session_factory):
    with pytest.raises(ValueError):
        await idempotency.run_idempotent(session_factory, "key-1", {"x": 1}, Counter(error=ValueError("boom")))

    retry = Counter()
    assert await idempotency.run_idempotent(session_factory, "key-1", {"x": 1}, retry) == (200, {"ok": True, "call": 1})
    assert retry.calls == 1


async def test_no_key_always_runs(session_factory):
    operation = Counter()
    await idempotency.run_idempotent(session_factory, None, {"x": 1}, operation)
    await idempotency.run_idempotent(session_factory, None, {"x": 1}, operation)

    assert operation.calls == 2
    async with session_factory() as session:
        assert (await session.execute(select(IdempotencyKey))).scalars().all() == []


async def test_expired_record_is_treated_as_absent(session_factory):
    fingerprint = idempotency.hash_payload({"x": 1})
    long_ago = utcnow() - timedelta(hours=25)
    async with session_factory() as session:
        await idempotency.reserve(session, "key-1", fingerprint, now=long_ago)
        await idempotency.store(session, "key-1", 200, {"stale": True})

    async with session_factory() as session:
        assert await idempotency.check(session, "key-1", idempotency.hash_payload({"x": 2})) is None


async def test_cleanup_removes_only_expired_records(session_factory):
    fingerprint = idempotency.hash_payload({})
    async with session_factory() as session:
        await idempotency.reserve(session, "old", fingerprint, now=utcnow() - timedelta(hours=30))
        await idempotency.reserve(session, "fresh", fingerprint)

    async with session_factory() as session:
        assert await idempotency.cleanup_expired(session) == 1
        keys = (await session.execute(select(IdempotencyKey.key))).scalars().all()
    assert keys == ["fresh"]


async def test_cleanup_skips_when_another_instance_holds_the_lock(session_factory, locks):
    async with session_factory() as session:
        await idempotency.reserve(session, "old", idempotency.hash_payload({}), now=utcnow() - timedelta(hours=30))
    token = await locks.acquire(idempotency.CLEANUP_LOCK, 60)

    assert await idempotency.cleanup_expired_keys(session_factory, locks) == 0

    await locks.release(idempotency.CLEANUP_LOCK, token)
    assert await idempotency.cleanup_expired_keys(session_factory, locks) == 1


async def test_response_is_returned_when_storing_it_fails(session_factory, monkeypatch, caplog):
    async def broken_store(session, key, status_code, body):
        raise ConnectionError("database went away")

    monkeypatch.setattr(idempotency, "store", broken_store)
    operation = Counter()

    with caplog.at_level(logging.ERROR, logger="ordercore.idempotency"):
        result = await idempotency.run_idempotent(session_factory, "key-1", {"x": 1}, operation, status_code=201)

    assert result == (201, {"ok": True, "call": 1})
    assert operation.calls == 1
    assert any("key-1" in record.getMessage() for record in caplog.records)
    with pytest.raises(IdempotencyConflict):
        await idempotency.run_idempotent(session_factory, "key-1", {"x": 1}, operation)
