"""Pytest fixtures for integration tests.

Connection settings come from the POSTGRES_* environment variables used by
the services. Each test starts from empty tables.
"""

import os
from typing import AsyncGenerator

import psycopg2
import pytest
from psycopg2.extensions import ISOLATION_LEVEL_AUTOCOMMIT

from ballot_services.ballot_api.database import Database
from ballot_services.ballot_api.services import Services, build_services


def postgres_params() -> dict:
    return {
        "host": os.getenv("POSTGRES_HOST", "localhost"),
        "port": int(os.getenv("POSTGRES_PORT", "5432")),
        "dbname": os.getenv("POSTGRES_DB", "ballot_db"),
        "user": os.getenv("POSTGRES_USER", "ballot_user"),
        "password": os.getenv("POSTGRES_PASSWORD", "ballot_pass"),
    }


@pytest.fixture(scope="session")
def postgres_connection():
    """PostgreSQL connection for direct assertions.

    Skips the integration tests when the database is not reachable.
    """
    try:
        conn = psycopg2.connect(connect_timeout=3, **postgres_params())
    except psycopg2.OperationalError:
        pytest.skip("PostgreSQL not available")
    conn.set_isolation_level(ISOLATION_LEVEL_AUTOCOMMIT)

    yield conn

    conn.close()


@pytest.fixture
def postgres_client(postgres_connection):
    """PostgreSQL cursor for executing queries."""
    cursor = postgres_connection.cursor()
    yield cursor
    cursor.close()


@pytest.fixture
async def pg_database(postgres_connection) -> AsyncGenerator[Database, None]:
    """asyncpg-backed Database on empty ballot tables."""
    params = postgres_params()
    db = Database(
        dsn=(
            f"postgresql://{params['user']}:{params['password']}"
            f"@{params['host']}:{params['port']}/{params['dbname']}"
        )
    )
    await db.initialize(create_schema=True)

    with postgres_connection.cursor() as cursor:
        cursor.execute("TRUNCATE TABLE votes, election_voters, candidates, elections, profiles CASCADE")
        cursor.execute(
            """
            INSERT INTO profiles (id, eligibility_key, name, role) VALUES
                ('host-1', 'HOST001', 'Election Host', 'voter'),
                ('voter-1', '124BT10001', 'Asha Rao', 'voter'),
                ('voter-2', ' 124bt10002', 'Ben Okafor', 'voter'),
                ('voter-3', '124BT10003', 'Chen Li', 'voter')
            """
        )

    yield db

    await db.close()


@pytest.fixture
def pg_services(pg_database) -> Services:
    """Engine components on PostgreSQL, without cache or change feed."""
    return build_services(pg_database)
