import asyncio
import json
import logging
from typing import Any, Optional, Protocol

from aio_pika import DeliveryMode, ExchangeType, Message, connect_robust
from aio_pika.abc import AbstractExchange, AbstractRobustChannel, AbstractRobustConnection

from ordercore.config import settings

logger = logging.getLogger("ordercore.messaging")


class EventPublisher(Protocol):
    async def publish(self, routing_key: str, payload: dict, message_id: Optional[str] = None) -> None:
        ...


class RabbitPublisher:
    """Publishes outbox events to a durable topic exchange."""

    def __init__(self, url: Optional[str] = None, exchange_name: Optional[str] = None):
        self.url = url or settings.rabbit_url
        self.exchange_name = exchange_name or settings.EVENTS_EXCHANGE
        self.connection: AbstractRobustConnection | None = None
        self.channel: AbstractRobustChannel | None = None
        self.exchange: AbstractExchange | None = None

    async def connect(self, retry_attempts: int = 5, retry_delay: int = 2) -> None:
        for attempt in range(1, retry_attempts + 1):
            try:
                logger.info(f"[Messaging] Connecting to RabbitMQ (attempt {attempt}/{retry_attempts})")
                self.connection = await connect_robust(self.url)
                self.channel = await self.connection.channel(publisher_confirms=True)
                self.exchange = await self.channel.declare_exchange(
                    self.exchange_name, ExchangeType.TOPIC, durable=True
                )
                logger.info("[Messaging] RabbitMQ setup complete")
                return
            except Exception as e:
                logger.error(f"[Messaging] RabbitMQ init failed: {e}")
                if attempt < retry_attempts:
                    await asyncio.sleep(retry_delay)
                else:
                    logger.critical("[Messaging] Could not connect to RabbitMQ, giving up")
                    raise

    async def publish(self, routing_key: str, payload: dict, message_id: Optional[str] = None) -> None:
        if self.exchange is None:
            await self.connect()
        message = Message(
            body=json.dumps(payload).encode(),
            content_type="application/json",
            delivery_mode=DeliveryMode.PERSISTENT,
            message_id=message_id,
        )
        await self.exchange.publish(message, routing_key=routing_key)

    async def close(self) -> None:
        if self.connection:
            await self.connection.close()
            logger.info("[Messaging] RabbitMQ connection closed")
        self.connection = self.channel = self.exchange = None


class LoggingPublisher:
    """Stand-in for environments without a broker (PUBLISH_EVENTS=false)."""

    async def publish(self, routing_key: str, payload: dict, message_id: Optional[str] = None) -> None:
        logger.info("[Messaging] %s %s: %s", routing_key, message_id, payload)

    async def close(self) -> None:
        return None


def build_publisher() -> Any:
    if settings.PUBLISH_EVENTS:
        return RabbitPublisher()
    return LoggingPublisher()
