"""
Change-feed subscription for the tally worker.

The worker owns one durable queue bound to the ballots topic exchange
with every ballot and election routing key.
"""
import logging
import asyncio
from typing import Awaitable, Callable, Optional

import aio_pika
from aio_pika.abc import AbstractIncomingMessage

from ..shared import RABBITMQ_CONFIG
from .config import config

logger = logging.getLogger(__name__)

MessageHandler = Callable[[AbstractIncomingMessage], Awaitable[None]]


class RabbitMQClient:
    """Subscribes the worker's queue to the change feed and delivers events."""

    def __init__(self, queue_name: Optional[str] = None, exchange_name: Optional[str] = None):
        self.queue_name = queue_name or config.RABBITMQ_QUEUE
        self.exchange_name = exchange_name or config.RABBITMQ_EXCHANGE
        self.bindings = list(RABBITMQ_CONFIG['bindings'])
        self.connection = None
        self.channel = None
        self.queue = None

    async def connect(self) -> bool:
        """
        Open a robust connection and set up exchange, queue and bindings.

        Declarations are idempotent, so the API publisher and the worker
        may start in either order.

        Returns:
            bool: False when the broker is unreachable
        """
        try:
            self.connection = await aio_pika.connect_robust(
                config.amqp_url,
                heartbeat=600,
                client_properties={'connection_name': f'tally-worker-{self.queue_name}'}
            )
            self.channel = await self.connection.channel()
            await self.channel.set_qos(prefetch_count=config.RABBITMQ_PREFETCH_COUNT)

            exchange = await self.channel.declare_exchange(
                self.exchange_name,
                aio_pika.ExchangeType.TOPIC,
                durable=True
            )
            self.queue = await self.channel.declare_queue(
                self.queue_name,
                durable=True,
                arguments={
                    'x-message-ttl': config.QUEUE_MESSAGE_TTL_MS,
                    'x-max-length': config.QUEUE_MAX_LENGTH,
                }
            )
            for routing_key in self.bindings:
                await self.queue.bind(exchange, routing_key=routing_key)

        except Exception as e:
            logger.error(f"Change feed unavailable at {config.RABBITMQ_HOST}:{config.RABBITMQ_PORT}: {e}")
            return False

        logger.info(
            f"Subscribed {self.queue_name} to {self.exchange_name} "
            f"({', '.join(self.bindings)}), prefetch {config.RABBITMQ_PREFETCH_COUNT}"
        )
        return True

    async def consume(self, callback: MessageHandler):
        """
        Feed every delivered event to the handler until cancelled.

        The handler settles malformed events itself. Events it leaves open
        are acked, and an exception from it puts the event back on the queue.

        Raises:
            RuntimeError: The broker could not be reached
        """
        if self.queue is None and not await self.connect():
            raise RuntimeError("Cannot consume: change feed unavailable")

        logger.info(f"Waiting for change events on {self.queue_name}")
        try:
            async with self.queue.iterator() as events:
                async for message in events:
                    await self._deliver(message, callback)
        except asyncio.CancelledError:
            logger.info("Change feed subscription cancelled")
            raise

    async def _deliver(self, message: AbstractIncomingMessage, callback: MessageHandler):
        try:
            await callback(message)
        except Exception as e:
            logger.error(f"Handler failed for change event: {e}", exc_info=True)
            if not message.processed:
                await message.nack(requeue=True)
            return
        if not message.processed:
            await message.ack()

    async def close(self):
        """Close channel and connection; errors are logged only."""
        try:
            if self.channel and not self.channel.is_closed:
                await self.channel.close()
            if self.connection and not self.connection.is_closed:
                await self.connection.close()
                logger.info("Change feed connection closed")
        except Exception as e:
            logger.error(f"Error closing change feed connection: {e}")
