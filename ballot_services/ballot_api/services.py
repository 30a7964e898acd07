"""Wiring of the ballot engine components around shared connections."""
import logging
from dataclasses import dataclass
from typing import Optional

import redis.asyncio as redis

from .config import settings
from .database import Database
from .eligibility import EligibilityStore
from .identity import IdentityResolver
from .ledger import BallotLedger
from .lifecycle import ElectionLifecycleManager
from .publisher import RabbitMQPublisher
from .tally import TallyEngine

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Everything a request handler needs."""
    database: Database
    identity: IdentityResolver
    eligibility: EligibilityStore
    tally: TallyEngine
    ledger: BallotLedger
    lifecycle: ElectionLifecycleManager
    redis_client: Optional[redis.Redis] = None
    publisher: Optional[RabbitMQPublisher] = None


def build_services(database, redis_client=None, publisher=None) -> Services:
    """Assemble the engine components on top of the given connections."""
    identity = IdentityResolver(database)
    eligibility = EligibilityStore(database)
    tally = TallyEngine(database, identity, redis_client=redis_client)
    return Services(
        database=database,
        identity=identity,
        eligibility=eligibility,
        tally=tally,
        ledger=BallotLedger(database, eligibility, tally, publisher=publisher),
        lifecycle=ElectionLifecycleManager(database, eligibility, tally, publisher=publisher),
        redis_client=redis_client,
        publisher=publisher,
    )


async def connect_services() -> Services:
    """
    Open connections from settings.

    PostgreSQL is required. Redis and RabbitMQ are optional: when they
    cannot be reached the API serves uncached results and skips the
    change feed.
    """
    database = Database()
    await database.initialize()

    redis_client = None
    if settings.TALLY_CACHE_ENABLED:
        redis_client = redis.from_url(
            settings.redis_url,
            encoding="utf-8",
            decode_responses=True
        )
        try:
            await redis_client.ping()
            logger.info("Redis connection established")
        except redis.RedisError as e:
            logger.warning(f"Redis unavailable, serving results without cache: {e}")

    publisher = None
    if settings.NOTIFICATIONS_ENABLED:
        publisher = RabbitMQPublisher()
        await publisher.initialize()

    return build_services(database, redis_client=redis_client, publisher=publisher)


async def close_services(services: Services):
    """Close every connection opened by connect_services."""
    try:
        if services.redis_client is not None:
            await services.redis_client.aclose()
        if services.publisher is not None:
            await services.publisher.close()
        await services.database.close()
    except Exception as e:
        logger.error(f"Error during shutdown: {e}")
