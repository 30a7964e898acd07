"""
Tally engine.

Results are always derived from the ballot ledger. The optional Redis
cache is keyed by a per-election version that every ledger write bumps,
so an entry computed before a write is never read after it.
"""
import logging
from datetime import datetime
from typing import Dict, List, Optional

import redis.asyncio as redis

from ..shared import compute_percentage, get_redis_key, normalize_lookup_token
from .config import settings
from .errors import NotFound
from .metrics import tally_cache_requests, turnout_unmapped_ballots
from .models import (
    CandidateSelfResultsResponse,
    CandidateTally,
    ElectionResultsResponse,
    TurnoutResponse,
    VoterStatus,
)

logger = logging.getLogger(__name__)


def rank_candidates(rows: List[Dict]) -> tuple[List[CandidateTally], int]:
    """
    Turn per-candidate counts into ranked tallies.

    Sorted by count descending (ties by name). Every candidate holding the
    maximum count is leading, provided at least one ballot exists.

    Args:
        rows: Dicts with candidate_id, name, description, vote_count

    Returns:
        tuple: (ranked tallies, total ballots)
    """
    total = sum(int(row["vote_count"]) for row in rows)
    top = max((int(row["vote_count"]) for row in rows), default=0)

    tallies = [
        CandidateTally(
            candidate_id=str(row["candidate_id"]),
            name=row["name"],
            description=row.get("description"),
            vote_count=int(row["vote_count"]),
            percentage=compute_percentage(int(row["vote_count"]), total),
            is_leading=total > 0 and int(row["vote_count"]) == top,
        )
        for row in rows
    ]
    tallies.sort(key=lambda t: (-t.vote_count, t.name))
    return tallies, total


class TallyEngine:
    """Read side: results, turnout and candidate self-service results."""

    def __init__(self, database, identity, redis_client: Optional[redis.Redis] = None,
                 cache_ttl: int = settings.TALLY_CACHE_TTL_SECONDS):
        self.database = database
        self.identity = identity
        self.redis = redis_client
        self.cache_ttl = cache_ttl

    async def get_results(self, election_id: str) -> ElectionResultsResponse:
        """
        Tally of one election.

        Raises:
            NotFound: Unknown election
        """
        version = await self._cache_version(election_id)
        if version is not None:
            cached = await self._cache_get(election_id, version)
            if cached is not None:
                return cached

        election = await self.database.fetch_election(election_id)
        if election is None:
            raise NotFound(f"Election {election_id} not found")

        rows = await self.database.fetch_tally(election_id)
        tallies, total = rank_candidates(rows)

        results = ElectionResultsResponse(
            election_id=str(election["id"]),
            title=election["title"],
            is_active=election["is_active"],
            total_votes=total,
            candidates=tallies,
            computed_at=datetime.utcnow(),
        )

        if version is not None:
            await self._cache_set(election_id, version, results)
        return results

    async def get_turnout(self, election_id: str) -> TurnoutResponse:
        """
        Which eligibility keys of an election have voted.

        A ballot whose voter identity has no profile, or whose profile key
        is not on this election's list, leaves every entry untouched and
        is reported through ``unmapped_ballots`` instead.

        Raises:
            NotFound: Unknown election
        """
        election = await self.database.fetch_election(election_id)
        if election is None:
            raise NotFound(f"Election {election_id} not found")

        keys, voter_ids = await self.database.fetch_turnout_snapshot(election_id)
        key_by_voter = await self.identity.eligibility_keys_for(voter_ids)

        eligible = set(keys)
        voted_keys = set()
        unmapped = 0
        for voter_id in voter_ids:
            key = key_by_voter.get(voter_id)
            if key is None or key not in eligible:
                unmapped += 1
                continue
            voted_keys.add(key)

        if unmapped:
            turnout_unmapped_ballots.inc(unmapped)
            logger.warning(
                f"Turnout anomaly: election={election_id} has {unmapped} "
                f"ballot(s) not mapped to an eligibility key"
            )

        names = await self.identity.names_for_keys(keys)
        voters = [
            VoterStatus(eligibility_key=key, name=names.get(key), has_voted=key in voted_keys)
            for key in keys
        ]

        return TurnoutResponse(
            election_id=str(election["id"]),
            eligible_voters=len(keys),
            voted_count=len(voted_keys),
            turnout_percentage=compute_percentage(len(voted_keys), len(keys)),
            unmapped_ballots=unmapped,
            voters=voters,
        )

    async def get_candidate_self_results(self, lookup_token: Optional[str]) -> CandidateSelfResultsResponse:
        """
        A candidate's own tally. Possession of the token is the only check.

        Raises:
            NotFound: Blank or unknown token
        """
        token = normalize_lookup_token(lookup_token)
        if token is None:
            raise NotFound("No candidate found with this ID")

        row = await self.database.fetch_candidate_self_tally(token)
        if row is None:
            raise NotFound("No candidate found with this ID")

        vote_count = int(row["vote_count"])
        total = int(row["total_votes"])
        return CandidateSelfResultsResponse(
            candidate_id=str(row["candidate_id"]),
            candidate_name=row["candidate_name"],
            election_id=str(row["election_id"]),
            election_title=row["election_title"],
            is_active=row["is_active"],
            vote_count=vote_count,
            total_votes=total,
            percentage=compute_percentage(vote_count, total),
        )

    # Cache

    async def invalidate(self, election_id: str):
        """Bump the election's cache version. Failures are logged, never raised."""
        if self.redis is None:
            return
        try:
            await self.redis.incr(get_redis_key('tally_version', election_id))
        except redis.RedisError as e:
            logger.error(f"Failed to invalidate tally cache for election {election_id}: {e}")

    async def forget(self, election_id: str):
        """Drop the version counter of a deleted election."""
        if self.redis is None:
            return
        try:
            await self.redis.delete(get_redis_key('tally_version', election_id))
        except redis.RedisError as e:
            logger.error(f"Failed to drop tally cache version for election {election_id}: {e}")

    async def _cache_version(self, election_id: str) -> Optional[str]:
        if self.redis is None:
            return None
        try:
            version = await self.redis.get(get_redis_key('tally_version', election_id))
            return str(version) if version is not None else "0"
        except redis.RedisError as e:
            logger.error(f"Tally cache unavailable: {e}")
            tally_cache_requests.labels(result="error").inc()
            return None

    async def _cache_get(self, election_id: str, version: str) -> Optional[ElectionResultsResponse]:
        try:
            payload = await self.redis.get(get_redis_key('tally_cache', election_id, version))
        except redis.RedisError as e:
            logger.error(f"Tally cache read failed: {e}")
            tally_cache_requests.labels(result="error").inc()
            return None

        if payload is None:
            tally_cache_requests.labels(result="miss").inc()
            return None

        tally_cache_requests.labels(result="hit").inc()
        return ElectionResultsResponse.model_validate_json(payload)

    async def _cache_set(self, election_id: str, version: str, results: ElectionResultsResponse):
        try:
            await self.redis.set(
                get_redis_key('tally_cache', election_id, version),
                results.model_dump_json(),
                ex=self.cache_ttl
            )
        except redis.RedisError as e:
            logger.error(f"Tally cache write failed: {e}")
