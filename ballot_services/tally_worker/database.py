"""
PostgreSQL reads for tally refresh.
"""
import logging
from collections import defaultdict
from contextlib import contextmanager
from typing import Dict, List

import psycopg2
from psycopg2 import pool, errors

from .config import config

logger = logging.getLogger(__name__)


class DatabaseError(Exception):
    """Custom exception for database errors."""
    pass


class Database:
    """PostgreSQL connection pool and tally queries."""

    def __init__(self):
        """Initialize database connection pool."""
        self.connection_pool = None
        self._init_connection_pool()

    def _init_connection_pool(self):
        """Create database connection pool."""
        try:
            self.connection_pool = psycopg2.pool.ThreadedConnectionPool(
                config.POSTGRES_MIN_CONNECTIONS,
                config.POSTGRES_MAX_CONNECTIONS,
                host=config.POSTGRES_HOST,
                port=config.POSTGRES_PORT,
                database=config.POSTGRES_DB,
                user=config.POSTGRES_USER,
                password=config.POSTGRES_PASSWORD,
                connect_timeout=10
            )
            logger.info(
                f"Database connection pool created: "
                f"{config.POSTGRES_HOST}:{config.POSTGRES_PORT}/{config.POSTGRES_DB}"
            )
        except Exception as e:
            logger.error(f"Failed to create connection pool: {e}")
            raise DatabaseError(f"Connection pool creation failed: {e}")

    @contextmanager
    def get_connection(self):
        """
        Context manager for database connections.

        Yields:
            Connection object from the pool.
        """
        connection = None
        try:
            connection = self.connection_pool.getconn()
            yield connection
        finally:
            if connection:
                self.connection_pool.putconn(connection)

    def get_election_tallies(self, election_ids: List[str]) -> Dict[str, Dict[str, int]]:
        """
        Per-candidate ballot counts for the given elections.

        Counts are derived from the votes table in one statement. Elections
        that no longer exist are absent from the result.

        Args:
            election_ids: Elections to tally

        Returns:
            Dict mapping election_id -> {candidate_id: count}

        Raises:
            DatabaseError: If the query fails.
        """
        if not election_ids:
            return {}

        query = """
        SELECT c.election_id::text, c.id::text, COUNT(v.id)
        FROM candidates c
        LEFT JOIN votes v
            ON v.candidate_id = c.id AND v.election_id = c.election_id
        WHERE c.election_id = ANY(%s::uuid[])
        GROUP BY c.election_id, c.id
        """
        return self._fetch_tallies(query, (list(election_ids),))

    def get_all_election_tallies(self) -> Dict[str, Dict[str, int]]:
        """Per-candidate ballot counts for every active election."""
        query = """
        SELECT c.election_id::text, c.id::text, COUNT(v.id)
        FROM candidates c
        JOIN elections e ON e.id = c.election_id
        LEFT JOIN votes v
            ON v.candidate_id = c.id AND v.election_id = c.election_id
        WHERE e.is_active
        GROUP BY c.election_id, c.id
        """
        return self._fetch_tallies(query, None)

    def _fetch_tallies(self, query: str, params) -> Dict[str, Dict[str, int]]:
        try:
            with self.get_connection() as conn:
                with conn.cursor() as cursor:
                    cursor.execute(query, params)
                    rows = cursor.fetchall()
                conn.commit()
        except errors.OperationalError as e:
            logger.error(f"Database operational error: {e}")
            raise DatabaseError(f"Operational error: {e}")
        except psycopg2.Error as e:
            logger.error(f"Tally query failed: {e}")
            raise DatabaseError(f"Tally query error: {e}")

        tallies = defaultdict(dict)
        for election_id, candidate_id, count in rows:
            tallies[election_id][candidate_id] = int(count)
        return dict(tallies)

    def close(self):
        """Close all connections in the pool."""
        if self.connection_pool:
            self.connection_pool.closeall()
            logger.info("Database connection pool closed")
