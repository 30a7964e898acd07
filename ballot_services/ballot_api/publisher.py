"""RabbitMQ publisher for the ballot change feed."""
import logging
from datetime import datetime
from typing import Optional

import aio_pika
from aio_pika import connect_robust, Message, DeliveryMode
from aio_pika.pool import Pool

from ..shared import BallotEvent
from .config import settings
from .metrics import change_feed_publish

logger = logging.getLogger(__name__)


class RabbitMQPublisher:
    """
    Async RabbitMQ publisher with connection pooling.

    The feed only tells listeners that an election changed; it is not part
    of any write's correctness, so publishing never raises.
    """

    def __init__(self, url: Optional[str] = None, exchange_name: Optional[str] = None):
        self.url = url or settings.rabbitmq_url
        self.exchange_name = exchange_name or settings.RABBITMQ_EXCHANGE
        self.connection_pool: Optional[Pool] = None
        self.channel_pool: Optional[Pool] = None
        self.ready = False

    async def get_connection(self) -> aio_pika.abc.AbstractRobustConnection:
        """Get a connection for the pool."""
        return await connect_robust(self.url)

    async def get_channel(self) -> aio_pika.abc.AbstractChannel:
        """Get a channel for the pool."""
        async with self.connection_pool.acquire() as connection:
            return await connection.channel()

    async def initialize(self):
        """Initialize connection and channel pools and declare the topic exchange."""
        self.connection_pool = Pool(
            self.get_connection,
            max_size=settings.RABBITMQ_POOL_SIZE
        )
        self.channel_pool = Pool(
            self.get_channel,
            max_size=settings.RABBITMQ_POOL_SIZE
        )

        try:
            async with self.channel_pool.acquire() as channel:
                await channel.declare_exchange(
                    self.exchange_name,
                    aio_pika.ExchangeType.TOPIC,
                    durable=True
                )
            self.ready = True
            logger.info("RabbitMQ publisher initialized successfully")

        except Exception as e:
            logger.error(f"Failed to initialize RabbitMQ publisher, change feed disabled until reconnect: {e}")

    async def publish_event(self, event: BallotEvent) -> bool:
        """
        Publish a change-feed event.

        Args:
            event: Event to publish

        Returns:
            bool: True if published successfully, False otherwise
        """
        if self.channel_pool is None:
            change_feed_publish.labels(status="skipped").inc()
            return False

        try:
            async with self.channel_pool.acquire() as channel:
                exchange = await channel.get_exchange(self.exchange_name)

                message = Message(
                    body=event.to_json().encode(),
                    delivery_mode=DeliveryMode.PERSISTENT,
                    content_type="application/json",
                    timestamp=datetime.utcnow()
                )

                await exchange.publish(message, routing_key=event.routing_key)

            self.ready = True
            change_feed_publish.labels(status="published").inc()
            logger.debug(f"Published {event.routing_key} for election={event.election_id}")
            return True

        except Exception as e:
            change_feed_publish.labels(status="failed").inc()
            logger.error(f"Failed to publish {event.event_type} for election={event.election_id}: {e}")
            return False

    async def check_health(self) -> bool:
        """
        Check RabbitMQ connection health.

        Returns:
            bool: True if healthy, False otherwise
        """
        if self.channel_pool is None:
            return False
        try:
            async with self.channel_pool.acquire() as channel:
                await channel.get_exchange(self.exchange_name)
                return True
        except Exception as e:
            logger.error(f"RabbitMQ health check failed: {e}")
            return False

    async def close(self):
        """Close all connections and channels."""
        try:
            if self.channel_pool:
                await self.channel_pool.close()
            if self.connection_pool:
                await self.connection_pool.close()
            logger.info("RabbitMQ publisher closed successfully")
        except Exception as e:
            logger.error(f"Error closing RabbitMQ publisher: {e}")
