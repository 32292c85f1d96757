import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Tuple

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ordercore import idempotency, inventory, lifecycle
from ordercore.config import settings
from ordercore.locks import LockService
from ordercore.outbox import OutboxDispatcher

logger = logging.getLogger("ordercore.workers")

Job = Callable[[], Awaitable[Any]]


def build_jobs(
    session_factory: async_sessionmaker[AsyncSession],
    locks: LockService,
    dispatcher: OutboxDispatcher,
) -> Dict[str, Tuple[Job, int]]:
    """Job name -> (one run, interval in seconds)."""

    async def idempotency_cleanup():
        return await idempotency.cleanup_expired_keys(session_factory, locks)

    async def reservation_expiry():
        return await inventory.release_expired_reservations(session_factory, locks)

    async def auto_cancel():
        return await lifecycle.auto_cancel_unpaid_orders(session_factory, locks)

    async def sla_check():
        return await lifecycle.track_sla_breaches(session_factory, locks)

    return {
        "idempotency-cleanup": (idempotency_cleanup, settings.IDEMPOTENCY_CLEANUP_INTERVAL),
        "reservation-expiry": (reservation_expiry, settings.RESERVATION_SWEEP_INTERVAL),
        "outbox-dispatch": (dispatcher.process_outbox, settings.OUTBOX_POLL_INTERVAL),
        "outbox-cleanup": (dispatcher.cleanup_completed, settings.OUTBOX_CLEANUP_INTERVAL),
        "auto-cancel": (auto_cancel, settings.AUTO_CANCEL_INTERVAL),
        "sla-check": (sla_check, settings.SLA_CHECK_INTERVAL),
    }


async def run_periodically(name: str, job: Job, interval: int):
    logger.info("[Workers] Starting %s every %ds", name, interval)
    while True:
        try:
            result = await job()
            logger.debug("[Workers] %s finished: %s", name, result)
        except Exception:
            logger.error("[Workers] %s failed", name, exc_info=True)
        await asyncio.sleep(interval)


def start_workers(jobs: Dict[str, Tuple[Job, int]]) -> List[asyncio.Task]:
    return [
        asyncio.create_task(run_periodically(name, job, interval), name=f"worker:{name}")
        for name, (job, interval) in jobs.items()
    ]


async def stop_workers(tasks: List[asyncio.Task]) -> None:
    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)
