"""PostgreSQL database connection and queries."""
import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from typing import Optional, Dict, List, Tuple, Any

import asyncpg

from .config import settings
from .errors import (
    AlreadyVoted,
    ElectionClosed,
    ElectionValidationError,
    InvalidCandidate,
    StorageUnavailable,
)

logger = logging.getLogger(__name__)


VOTES_UNIQUE_CONSTRAINT = "votes_election_voter_key"
CANDIDATE_TOKEN_CONSTRAINT = "candidates_unique_id_key"

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS profiles (
    id TEXT PRIMARY KEY,
    eligibility_key TEXT NOT NULL,
    name TEXT,
    role TEXT NOT NULL DEFAULT 'voter',
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS idx_profiles_eligibility_key
    ON profiles (upper(btrim(eligibility_key)));

CREATE TABLE IF NOT EXISTS elections (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    title TEXT NOT NULL CHECK (length(btrim(title)) > 0),
    description TEXT,
    created_by TEXT NOT NULL,
    is_active BOOLEAN NOT NULL DEFAULT TRUE,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS idx_elections_created_by ON elections (created_by);

CREATE TABLE IF NOT EXISTS candidates (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    election_id UUID NOT NULL REFERENCES elections (id) ON DELETE CASCADE,
    name TEXT NOT NULL CHECK (length(btrim(name)) > 0),
    description TEXT,
    unique_id TEXT,
    CONSTRAINT candidates_unique_id_key UNIQUE (unique_id),
    CONSTRAINT candidates_id_election_key UNIQUE (id, election_id)
);
CREATE INDEX IF NOT EXISTS idx_candidates_election ON candidates (election_id);

CREATE TABLE IF NOT EXISTS election_voters (
    election_id UUID NOT NULL REFERENCES elections (id) ON DELETE CASCADE,
    eligibility_key TEXT NOT NULL,
    CONSTRAINT election_voters_pkey PRIMARY KEY (election_id, eligibility_key)
);
CREATE INDEX IF NOT EXISTS idx_election_voters_key ON election_voters (eligibility_key);

CREATE TABLE IF NOT EXISTS votes (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    election_id UUID NOT NULL REFERENCES elections (id) ON DELETE CASCADE,
    candidate_id UUID NOT NULL,
    voter_id TEXT NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    CONSTRAINT votes_election_voter_key UNIQUE (election_id, voter_id),
    CONSTRAINT votes_candidate_election_fkey FOREIGN KEY (candidate_id, election_id)
        REFERENCES candidates (id, election_id) ON DELETE CASCADE
);
CREATE INDEX IF NOT EXISTS idx_votes_candidate ON votes (candidate_id);
CREATE INDEX IF NOT EXISTS idx_votes_voter ON votes (voter_id);
"""

ELECTION_COLUMNS = """
    e.id, e.title, e.description, e.created_by, e.is_active, e.created_at,
    (SELECT COUNT(*) FROM election_voters ev WHERE ev.election_id = e.id)
        AS eligible_voter_count
"""


def _as_uuid(value: Any) -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    return uuid.UUID(str(value))


def _record(row: Optional[asyncpg.Record]) -> Optional[Dict]:
    """Convert a record to a plain dict with string identifiers."""
    if row is None:
        return None
    return {
        key: str(value) if isinstance(value, uuid.UUID) else value
        for key, value in row.items()
    }


class Database:
    """Async PostgreSQL database manager."""

    def __init__(self, dsn: Optional[str] = None):
        self.dsn = dsn or settings.postgres_dsn
        self.pool: Optional[asyncpg.Pool] = None

    async def initialize(self, create_schema: bool = True):
        """Initialize database connection pool."""
        try:
            self.pool = await asyncpg.create_pool(
                self.dsn,
                min_size=settings.POSTGRES_POOL_MIN_SIZE,
                max_size=settings.POSTGRES_POOL_MAX_SIZE,
                command_timeout=settings.POSTGRES_COMMAND_TIMEOUT
            )
            logger.info("PostgreSQL connection pool initialized successfully")

            async with self.pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
                logger.info("PostgreSQL connection verified")
                if create_schema:
                    await conn.execute(SCHEMA_SQL)
                    logger.info("Ballot schema ensured")

        except Exception as e:
            logger.error(f"Failed to initialize PostgreSQL connection pool: {e}")
            raise

    @asynccontextmanager
    async def _acquire(self):
        """Acquire a pooled connection, mapping transport failures to StorageUnavailable."""
        try:
            async with self.pool.acquire() as conn:
                yield conn
        except (
            asyncpg.PostgresConnectionError,
            asyncpg.InterfaceError,
            asyncpg.CannotConnectNowError,
            asyncio.TimeoutError,
            OSError,
        ) as e:
            logger.error(f"PostgreSQL unavailable: {e}")
            raise StorageUnavailable() from e

    # Identity

    async def fetch_profile(self, voter_id: str) -> Optional[Dict]:
        """Get the identity-provider profile for one voter identity."""
        async with self._acquire() as conn:
            row = await conn.fetchrow(
                "SELECT id, eligibility_key, name, role FROM profiles WHERE id = $1",
                voter_id
            )
            return _record(row)

    async def fetch_profiles_by_ids(self, voter_ids: List[str]) -> List[Dict]:
        """Get profiles for a batch of voter identities."""
        if not voter_ids:
            return []
        async with self._acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT id, eligibility_key, name, role
                FROM profiles
                WHERE id = ANY($1::text[])
                """,
                list(voter_ids)
            )
            return [_record(row) for row in rows]

    async def fetch_profiles_by_keys(self, eligibility_keys: List[str]) -> List[Dict]:
        """Get profiles holding any of the given (normalised) eligibility keys."""
        if not eligibility_keys:
            return []
        async with self._acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT id, eligibility_key, name, role
                FROM profiles
                WHERE upper(btrim(eligibility_key)) = ANY($1::text[])
                ORDER BY created_at, id
                """,
                list(eligibility_keys)
            )
            return [_record(row) for row in rows]

    # Eligibility

    async def is_eligible(self, election_id: str, eligibility_key: str) -> bool:
        """Check whether an eligibility entry exists for the pair."""
        async with self._acquire() as conn:
            found = await conn.fetchval(
                """
                SELECT 1 FROM election_voters
                WHERE election_id = $1 AND eligibility_key = $2
                """,
                _as_uuid(election_id), eligibility_key
            )
            return found is not None

    # Elections and candidates

    async def fetch_election(self, election_id: str) -> Optional[Dict]:
        """Get one election or None."""
        async with self._acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT {ELECTION_COLUMNS} FROM elections e WHERE e.id = $1",
                _as_uuid(election_id)
            )
            return _record(row)

    async def fetch_elections(
        self,
        created_by: Optional[str] = None,
        eligibility_key: Optional[str] = None,
        active_only: bool = False
    ) -> List[Dict]:
        """
        List elections, newest first.

        Args:
            created_by: Only elections hosted by this identity
            eligibility_key: Only elections whose allow-list contains this key
            active_only: Only active elections

        Returns:
            List of election dicts including eligible_voter_count
        """
        conditions = []
        args = []
        if created_by is not None:
            args.append(created_by)
            conditions.append(f"e.created_by = ${len(args)}")
        if eligibility_key is not None:
            args.append(eligibility_key)
            conditions.append(
                "EXISTS (SELECT 1 FROM election_voters ev "
                f"WHERE ev.election_id = e.id AND ev.eligibility_key = ${len(args)})"
            )
        if active_only:
            conditions.append("e.is_active")

        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        async with self._acquire() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {ELECTION_COLUMNS}
                FROM elections e
                {where}
                ORDER BY e.created_at DESC, e.id
                """,
                *args
            )
            return [_record(row) for row in rows]

    async def fetch_candidate(self, candidate_id: str) -> Optional[Dict]:
        """Get one candidate or None."""
        async with self._acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT id, election_id, name, description, unique_id
                FROM candidates WHERE id = $1
                """,
                _as_uuid(candidate_id)
            )
            return _record(row)

    async def fetch_candidates(self, election_ids: List[str]) -> List[Dict]:
        """Get candidates of several elections."""
        if not election_ids:
            return []
        async with self._acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT id, election_id, name, description, unique_id
                FROM candidates
                WHERE election_id = ANY($1::uuid[])
                ORDER BY name, id
                """,
                [_as_uuid(e) for e in election_ids]
            )
            return [_record(row) for row in rows]

    async def create_election(
        self,
        title: str,
        description: Optional[str],
        created_by: str,
        candidates: List[Dict],
        eligibility_keys: List[str]
    ) -> Dict:
        """
        Create an election with its candidates and allow-list in one transaction.

        Either every row is written or none is.

        Raises:
            ElectionValidationError: A lookup token is already taken
        """
        async with self._acquire() as conn:
            try:
                async with conn.transaction():
                    election_id = await conn.fetchval(
                        """
                        INSERT INTO elections (title, description, created_by)
                        VALUES ($1, $2, $3)
                        RETURNING id
                        """,
                        title, description, created_by
                    )

                    for candidate in candidates:
                        await conn.execute(
                            """
                            INSERT INTO candidates (election_id, name, description, unique_id)
                            VALUES ($1, $2, $3, $4)
                            """,
                            election_id,
                            candidate["name"],
                            candidate.get("description"),
                            candidate.get("unique_id")
                        )

                    await conn.execute(
                        """
                        INSERT INTO election_voters (election_id, eligibility_key)
                        SELECT $1, key FROM unnest($2::text[]) AS key
                        ON CONFLICT DO NOTHING
                        """,
                        election_id, list(eligibility_keys)
                    )

                    row = await conn.fetchrow(
                        f"SELECT {ELECTION_COLUMNS} FROM elections e WHERE e.id = $1",
                        election_id
                    )
            except asyncpg.UniqueViolationError as e:
                if e.constraint_name == CANDIDATE_TOKEN_CONSTRAINT:
                    raise ElectionValidationError(
                        "Candidate unique ID is already in use",
                        details={"field": "candidates.unique_id"}
                    ) from e
                raise

            return _record(row)

    async def set_election_active(self, election_id: str, is_active: bool) -> Optional[Dict]:
        """Toggle the active flag. Returns the updated election or None."""
        async with self._acquire() as conn:
            updated = await conn.fetchval(
                "UPDATE elections SET is_active = $2 WHERE id = $1 RETURNING id",
                _as_uuid(election_id), is_active
            )
            if updated is None:
                return None
            row = await conn.fetchrow(
                f"SELECT {ELECTION_COLUMNS} FROM elections e WHERE e.id = $1",
                updated
            )
            return _record(row)

    async def delete_election(self, election_id: str) -> bool:
        """
        Delete an election. Candidates, eligibility entries and ballots go
        with it through ON DELETE CASCADE in the same statement.
        """
        async with self._acquire() as conn:
            deleted = await conn.fetchval(
                "DELETE FROM elections WHERE id = $1 RETURNING id",
                _as_uuid(election_id)
            )
            return deleted is not None

    # Ballot ledger

    async def insert_ballot(self, election_id: str, candidate_id: str, voter_id: str) -> Dict:
        """
        Append a ballot.

        The (election_id, voter_id) unique constraint is the serialization
        point: of any number of concurrent inserts for the same pair exactly
        one commits and the rest fail with a unique violation.

        Raises:
            AlreadyVoted: A ballot for this (election, voter) already exists
            ElectionClosed: Election is inactive (or vanished) at insert time
            InvalidCandidate: Candidate is not part of the election
        """
        async with self._acquire() as conn:
            try:
                row = await conn.fetchrow(
                    """
                    INSERT INTO votes (election_id, candidate_id, voter_id)
                    SELECT $1, $2, $3
                    WHERE EXISTS (
                        SELECT 1 FROM elections WHERE id = $1 AND is_active
                    )
                    RETURNING id, election_id, candidate_id, voter_id, created_at
                    """,
                    _as_uuid(election_id), _as_uuid(candidate_id), voter_id
                )
            except asyncpg.UniqueViolationError as e:
                if e.constraint_name == VOTES_UNIQUE_CONSTRAINT:
                    raise AlreadyVoted() from e
                raise
            except asyncpg.ForeignKeyViolationError as e:
                raise InvalidCandidate() from e

            if row is None:
                raise ElectionClosed()
            return _record(row)

    async def fetch_ballot_for_voter(self, election_id: str, voter_id: str) -> Optional[Dict]:
        """Get the voter's ballot in an election, if any."""
        async with self._acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT id, election_id, candidate_id, voter_id, created_at
                FROM votes WHERE election_id = $1 AND voter_id = $2
                """,
                _as_uuid(election_id), voter_id
            )
            return _record(row)

    async def fetch_voter_ballots(self, voter_id: str, election_ids: List[str]) -> Dict[str, str]:
        """Map election_id -> candidate_id for the voter's ballots in the given elections."""
        if not election_ids:
            return {}
        async with self._acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT election_id, candidate_id FROM votes
                WHERE voter_id = $1 AND election_id = ANY($2::uuid[])
                """,
                voter_id, [_as_uuid(e) for e in election_ids]
            )
            return {str(row["election_id"]): str(row["candidate_id"]) for row in rows}

    # Tallies

    async def fetch_tally(self, election_id: str) -> List[Dict]:
        """
        Per-candidate ballot counts for an election.

        A single statement, so every count comes from the same snapshot.
        """
        async with self._acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT
                    c.id AS candidate_id,
                    c.name,
                    c.description,
                    COUNT(v.id) AS vote_count
                FROM candidates c
                LEFT JOIN votes v
                    ON v.candidate_id = c.id AND v.election_id = c.election_id
                WHERE c.election_id = $1
                GROUP BY c.id, c.name, c.description
                ORDER BY c.name, c.id
                """,
                _as_uuid(election_id)
            )
            return [_record(row) for row in rows]

    async def fetch_turnout_snapshot(self, election_id: str) -> Tuple[List[str], List[str]]:
        """
        Allow-list keys and ballot voter identities of an election, read
        from one repeatable-read snapshot.

        Returns:
            (eligibility_keys, voter_ids)
        """
        async with self._acquire() as conn:
            async with conn.transaction(isolation="repeatable_read", readonly=True):
                key_rows = await conn.fetch(
                    """
                    SELECT eligibility_key FROM election_voters
                    WHERE election_id = $1 ORDER BY eligibility_key
                    """,
                    _as_uuid(election_id)
                )
                voter_rows = await conn.fetch(
                    "SELECT voter_id FROM votes WHERE election_id = $1",
                    _as_uuid(election_id)
                )
            return (
                [row["eligibility_key"] for row in key_rows],
                [row["voter_id"] for row in voter_rows],
            )

    async def fetch_candidate_self_tally(self, lookup_token: str) -> Optional[Dict]:
        """
        Resolve a candidate by lookup token together with its ballot count
        and its election's total, in a single statement.
        """
        async with self._acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT
                    c.id AS candidate_id,
                    c.name AS candidate_name,
                    c.election_id,
                    e.title AS election_title,
                    e.is_active,
                    (SELECT COUNT(*) FROM votes v WHERE v.candidate_id = c.id)
                        AS vote_count,
                    (SELECT COUNT(*) FROM votes v WHERE v.election_id = c.election_id)
                        AS total_votes
                FROM candidates c
                JOIN elections e ON e.id = c.election_id
                WHERE c.unique_id = $1
                """,
                lookup_token
            )
            return _record(row)

    async def check_health(self) -> bool:
        """
        Check PostgreSQL connection health.

        Returns:
            bool: True if healthy, False otherwise
        """
        try:
            if not self.pool:
                return False
            async with self.pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
                return True
        except Exception as e:
            logger.error(f"PostgreSQL health check failed: {e}")
            return False

    async def close(self):
        """Close database connection pool."""
        try:
            if self.pool:
                await self.pool.close()
                logger.info("PostgreSQL connection pool closed successfully")
        except Exception as e:
            logger.error(f"Error closing PostgreSQL connection pool: {e}")
