"""Redis client for tally cache versions."""

import logging
from typing import Iterable

import redis

from ..shared import get_redis_key
from .config import Config

logger = logging.getLogger(__name__)


class RedisClient:
    """Bumps and drops the per-election tally cache version counters."""

    def __init__(self, client: redis.Redis = None):
        """Initialize Redis connection pool unless a client is supplied."""
        if client is not None:
            self.client = client
            return

        self.pool = redis.ConnectionPool(
            host=Config.REDIS_HOST,
            port=Config.REDIS_PORT,
            db=Config.REDIS_DB,
            password=Config.REDIS_PASSWORD,
            max_connections=Config.REDIS_MAX_CONNECTIONS,
            decode_responses=True,
            socket_connect_timeout=5,
            socket_keepalive=True,
            health_check_interval=30
        )
        self.client = redis.Redis(connection_pool=self.pool)
        self._test_connection()

    def _test_connection(self):
        """Test Redis connection on initialization."""
        try:
            self.client.ping()
            logger.info("Redis connection established successfully")
        except redis.RedisError as e:
            logger.error(f"Failed to connect to Redis: {e}")
            raise

    def bump_versions(self, election_ids: Iterable[str]) -> None:
        """
        Invalidate cached tallies of several elections in one round trip.

        Args:
            election_ids: Elections whose ledger changed
        """
        election_ids = list(election_ids)
        if not election_ids:
            return
        try:
            pipe = self.client.pipeline()
            for election_id in election_ids:
                pipe.incr(get_redis_key('tally_version', election_id))
            pipe.execute()
            logger.debug(f"Bumped tally versions for {len(election_ids)} elections")
        except redis.RedisError as e:
            logger.error(f"Redis error bumping tally versions: {e}")
            raise

    def forget(self, election_id: str) -> None:
        """Drop the version counter of a deleted election."""
        try:
            self.client.delete(get_redis_key('tally_version', election_id))
        except redis.RedisError as e:
            logger.error(f"Redis error dropping tally version: {e}")
            raise

    def close(self):
        """Close Redis connection pool."""
        try:
            self.client.close()
            logger.info("Redis connection closed")
        except redis.RedisError as e:
            logger.error(f"Error closing Redis connection: {e}")
