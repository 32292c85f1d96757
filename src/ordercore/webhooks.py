import hashlib
import hmac
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ordercore.config import settings
from ordercore.db import run_serializable, utcnow
from ordercore.errors import BadRequestError, UnauthorizedError
from ordercore.models import WebhookEvent
from ordercore.orders import apply_payment_failure, apply_payment_success, get_order
from ordercore.schemas import PaymentWebhook

logger = logging.getLogger("ordercore.webhooks")

PROCESSED = "processed"
DUPLICATE = "duplicate"


def sign(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def verify_signature(provider: str, body: bytes, signature: Optional[str]) -> None:
    secret = settings.WEBHOOK_SECRETS.get(provider)
    if not secret:
        raise BadRequestError(f"Unsupported payment provider: {provider}")
    if not signature or not hmac.compare_digest(sign(secret, body), signature):
        raise UnauthorizedError("Invalid webhook signature")


async def handle_payment_webhook(
    session_factory: async_sessionmaker[AsyncSession],
    provider: str,
    event: PaymentWebhook,
    now: Optional[datetime] = None,
) -> str:
    """
    Applies one gateway callback. The dedup record and the payment side
    effect commit together, so a failed attempt leaves nothing behind and
    the provider's retry is processed normally.
    """
    async def work(session: AsyncSession) -> str:
        ts = now or utcnow()
        seen = await session.execute(
            select(WebhookEvent.id).where(
                WebhookEvent.provider == provider,
                WebhookEvent.event_id == event.event_id,
            )
        )
        if seen.scalar_one_or_none() is not None:
            return DUPLICATE

        session.add(
            WebhookEvent(
                provider=provider,
                event_id=event.event_id,
                event_type=event.type,
                payload=event.model_dump(mode="json"),
                created_at=ts,
            )
        )
        await session.flush()

        order = await get_order(session, event.order_id)
        if event.type == "payment.succeeded":
            await apply_payment_success(session, order, event.gateway_payment_id, now=ts)
        else:
            await apply_payment_failure(session, order, event.reason, now=ts)
        return PROCESSED

    try:
        outcome = await run_serializable(session_factory, work)
    except IntegrityError:
        # a concurrent delivery of the same event won the insert
        outcome = DUPLICATE

    if outcome == DUPLICATE:
        logger.info("[Webhooks] %s event %s already processed", provider, event.event_id)
    else:
        logger.info(
            "[Webhooks] %s event %s (%s) applied to order %s",
            provider, event.event_id, event.type, event.order_id,
        )
    return outcome
