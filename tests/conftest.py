"""Shared fixtures and in-memory doubles for the ballot services tests.

The in-memory database mirrors the storage guarantees the engine relies on:
ballot insertion is a single atomic step keyed by (election, voter), the
same way the votes_election_voter_key constraint serialises inserts in
PostgreSQL.
"""

import asyncio
import itertools
import uuid
from datetime import datetime, timedelta
from typing import AsyncGenerator, Dict, List, Optional

import httpx
import pytest
import redis

from ballot_services.ballot_api.errors import (
    AlreadyVoted,
    ElectionClosed,
    ElectionValidationError,
    InvalidCandidate,
)
from ballot_services.ballot_api.identity import VoterIdentity
from ballot_services.ballot_api.main import create_app
from ballot_services.ballot_api.models import CreateElectionRequest
from ballot_services.ballot_api.services import build_services
from ballot_services.shared import normalize_eligibility_key


class InMemoryDatabase:
    """Drop-in replacement for ballot_api.database.Database."""

    def __init__(self):
        self.profiles: Dict[str, Dict] = {}
        self.elections: Dict[str, Dict] = {}
        self.candidates: Dict[str, Dict] = {}
        self.election_voters: Dict[str, List[str]] = {}
        self.votes: Dict[tuple, Dict] = {}
        self.healthy = True
        self._clock = itertools.count()

    def _now(self) -> datetime:
        return datetime(2024, 1, 15, 10, 0, 0) + timedelta(seconds=next(self._clock))

    # Test setup helpers

    def add_profile(self, voter_id: str, eligibility_key: str, name: Optional[str] = None, role: str = "voter"):
        self.profiles[voter_id] = {
            "id": voter_id,
            "eligibility_key": eligibility_key,
            "name": name,
            "role": role,
        }

    def add_ballot(self, election_id: str, candidate_id: str, voter_id: str) -> Dict:
        """Write a ballot directly, bypassing every gate except uniqueness."""
        key = (election_id, voter_id)
        if key in self.votes:
            raise AlreadyVoted()
        ballot = {
            "id": str(uuid.uuid4()),
            "election_id": election_id,
            "candidate_id": candidate_id,
            "voter_id": voter_id,
            "created_at": self._now(),
        }
        self.votes[key] = ballot
        return ballot

    def _election_row(self, election: Dict) -> Dict:
        return {**election, "eligible_voter_count": len(self.election_voters.get(election["id"], []))}

    # Identity

    async def fetch_profile(self, voter_id: str) -> Optional[Dict]:
        profile = self.profiles.get(voter_id)
        return dict(profile) if profile else None

    async def fetch_profiles_by_ids(self, voter_ids: List[str]) -> List[Dict]:
        return [dict(self.profiles[v]) for v in voter_ids if v in self.profiles]

    async def fetch_profiles_by_keys(self, eligibility_keys: List[str]) -> List[Dict]:
        wanted = set(eligibility_keys)
        return [
            dict(p) for p in self.profiles.values()
            if normalize_eligibility_key(p["eligibility_key"]) in wanted
        ]

    # Eligibility

    async def is_eligible(self, election_id: str, eligibility_key: str) -> bool:
        return eligibility_key in self.election_voters.get(election_id, [])

    def allow_list(self, election_id: str) -> List[str]:
        return sorted(self.election_voters.get(election_id, []))

    # Elections

    async def fetch_election(self, election_id: str) -> Optional[Dict]:
        election = self.elections.get(election_id)
        return self._election_row(election) if election else None

    async def fetch_elections(self, created_by=None, eligibility_key=None, active_only=False) -> List[Dict]:
        rows = []
        for election in self.elections.values():
            if created_by is not None and election["created_by"] != created_by:
                continue
            if eligibility_key is not None and eligibility_key not in self.election_voters[election["id"]]:
                continue
            if active_only and not election["is_active"]:
                continue
            rows.append(self._election_row(election))
        return sorted(rows, key=lambda e: e["created_at"], reverse=True)

    async def fetch_candidate(self, candidate_id: str) -> Optional[Dict]:
        candidate = self.candidates.get(candidate_id)
        return dict(candidate) if candidate else None

    async def fetch_candidates(self, election_ids: List[str]) -> List[Dict]:
        wanted = set(election_ids)
        rows = [dict(c) for c in self.candidates.values() if c["election_id"] in wanted]
        return sorted(rows, key=lambda c: (c["name"], c["id"]))

    async def create_election(self, title, description, created_by, candidates, eligibility_keys) -> Dict:
        taken = {c["unique_id"] for c in self.candidates.values() if c["unique_id"]}
        if any(c.get("unique_id") in taken for c in candidates if c.get("unique_id")):
            raise ElectionValidationError(
                "Candidate unique ID is already in use",
                details={"field": "candidates.unique_id"}
            )

        election_id = str(uuid.uuid4())
        self.elections[election_id] = {
            "id": election_id,
            "title": title,
            "description": description,
            "created_by": created_by,
            "is_active": True,
            "created_at": self._now(),
        }
        for candidate in candidates:
            candidate_id = str(uuid.uuid4())
            self.candidates[candidate_id] = {
                "id": candidate_id,
                "election_id": election_id,
                "name": candidate["name"],
                "description": candidate.get("description"),
                "unique_id": candidate.get("unique_id"),
            }
        self.election_voters[election_id] = list(dict.fromkeys(eligibility_keys))
        return self._election_row(self.elections[election_id])

    async def set_election_active(self, election_id: str, is_active: bool) -> Optional[Dict]:
        election = self.elections.get(election_id)
        if election is None:
            return None
        election["is_active"] = is_active
        return self._election_row(election)

    async def delete_election(self, election_id: str) -> bool:
        if self.elections.pop(election_id, None) is None:
            return False
        self.election_voters.pop(election_id, None)
        self.candidates = {k: c for k, c in self.candidates.items() if c["election_id"] != election_id}
        self.votes = {k: v for k, v in self.votes.items() if v["election_id"] != election_id}
        return True

    # Ballot ledger

    async def insert_ballot(self, election_id: str, candidate_id: str, voter_id: str) -> Dict:
        # Yield first so concurrent callers interleave up to the insert itself
        await asyncio.sleep(0)
        election = self.elections.get(election_id)
        if election is None or not election["is_active"]:
            raise ElectionClosed()
        candidate = self.candidates.get(candidate_id)
        if candidate is None or candidate["election_id"] != election_id:
            raise InvalidCandidate()
        return self.add_ballot(election_id, candidate_id, voter_id)

    async def fetch_ballot_for_voter(self, election_id: str, voter_id: str) -> Optional[Dict]:
        ballot = self.votes.get((election_id, voter_id))
        return dict(ballot) if ballot else None

    async def fetch_voter_ballots(self, voter_id: str, election_ids: List[str]) -> Dict[str, str]:
        return {
            e: self.votes[(e, voter_id)]["candidate_id"]
            for e in election_ids if (e, voter_id) in self.votes
        }

    # Tallies

    async def fetch_tally(self, election_id: str) -> List[Dict]:
        rows = []
        for candidate in await self.fetch_candidates([election_id]):
            count = sum(1 for v in self.votes.values() if v["candidate_id"] == candidate["id"])
            rows.append({
                "candidate_id": candidate["id"],
                "name": candidate["name"],
                "description": candidate["description"],
                "vote_count": count,
            })
        return rows

    async def fetch_turnout_snapshot(self, election_id: str):
        keys = sorted(self.election_voters.get(election_id, []))
        voter_ids = [v["voter_id"] for v in self.votes.values() if v["election_id"] == election_id]
        return keys, voter_ids

    async def fetch_candidate_self_tally(self, lookup_token: str) -> Optional[Dict]:
        for candidate in self.candidates.values():
            if candidate["unique_id"] == lookup_token:
                election = self.elections[candidate["election_id"]]
                ballots = [v for v in self.votes.values() if v["election_id"] == election["id"]]
                return {
                    "candidate_id": candidate["id"],
                    "candidate_name": candidate["name"],
                    "election_id": election["id"],
                    "election_title": election["title"],
                    "is_active": election["is_active"],
                    "vote_count": sum(1 for v in ballots if v["candidate_id"] == candidate["id"]),
                    "total_votes": len(ballots),
                }
        return None

    async def check_health(self) -> bool:
        return self.healthy

    async def close(self):
        pass


class InMemoryRedis:
    """The subset of redis.asyncio.Redis used by the tally cache."""

    def __init__(self):
        self.data: Dict[str, str] = {}
        self.fail = False

    def _check(self):
        if self.fail:
            raise redis.ConnectionError("Redis is down")

    async def get(self, key):
        self._check()
        return self.data.get(key)

    async def set(self, key, value, ex=None):
        self._check()
        self.data[key] = str(value)
        return True

    async def incr(self, key):
        self._check()
        self.data[key] = str(int(self.data.get(key, 0)) + 1)
        return int(self.data[key])

    async def delete(self, *keys):
        self._check()
        removed = sum(1 for k in keys if k in self.data)
        for k in keys:
            self.data.pop(k, None)
        return removed

    async def ping(self):
        self._check()
        return True

    async def aclose(self):
        pass


class RecordingPublisher:
    """Publisher double recording change-feed events."""

    def __init__(self):
        self.events = []
        self.fail = False

    async def publish_event(self, event) -> bool:
        if self.fail:
            return False
        self.events.append(event)
        return True

    async def check_health(self) -> bool:
        return not self.fail

    async def close(self):
        pass


@pytest.fixture
def database() -> InMemoryDatabase:
    """In-memory ballot store with a host, an admin and three voters."""
    db = InMemoryDatabase()
    db.add_profile("host-1", "HOST001", name="Election Host")
    db.add_profile("admin-1", "ADMIN001", name="Site Admin", role="admin")
    db.add_profile("voter-1", "124BT10001", name="Asha Rao")
    db.add_profile("voter-2", "124bt10002 ", name="Ben Okafor")
    db.add_profile("voter-3", "124BT10003", name="Chen Li")
    db.add_profile("outsider", "124BT10297", name="Not Listed")
    return db


@pytest.fixture
def fake_redis() -> InMemoryRedis:
    return InMemoryRedis()


@pytest.fixture
def publisher() -> RecordingPublisher:
    return RecordingPublisher()


@pytest.fixture
def services(database, fake_redis, publisher):
    return build_services(database, redis_client=fake_redis, publisher=publisher)


@pytest.fixture
def host() -> VoterIdentity:
    return VoterIdentity(voter_id="host-1", eligibility_key="HOST001", name="Election Host")


@pytest.fixture
def admin() -> VoterIdentity:
    return VoterIdentity(voter_id="admin-1", eligibility_key="ADMIN001", name="Site Admin", role="admin")


@pytest.fixture
def make_voter():
    """Build a resolved caller without going through the profiles table."""
    def _make(voter_id: str, key: str, role: str = "voter") -> VoterIdentity:
        return VoterIdentity(voter_id=voter_id, eligibility_key=key, role=role)
    return _make


@pytest.fixture
def election_request() -> Dict:
    """A valid create-election payload with three candidates and three voters."""
    return {
        "title": "Student Council President 2024",
        "description": "Annual council election",
        "candidates": [
            {"name": "A", "unique_id": "CAND-A"},
            {"name": "B", "unique_id": "CAND-B"},
            {"name": "C"},
        ],
        "eligibility_keys": ["124BT10001", "124BT10002", "124BT10003"],
    }


@pytest.fixture
async def election(services, host, election_request):
    """An active election created through the lifecycle manager."""
    return await services.lifecycle.create_election(host, CreateElectionRequest(**election_request))


@pytest.fixture
async def api_client(services) -> AsyncGenerator[httpx.AsyncClient, None]:
    """HTTP client bound to an app that uses the in-memory services."""
    app = create_app(services)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


def pytest_configure(config):
    """Register custom pytest markers."""
    config.addinivalue_line(
        "markers",
        "docker: mark test as requiring a running PostgreSQL"
    )
    config.addinivalue_line(
        "markers",
        "slow: mark test as slow running"
    )
    config.addinivalue_line(
        "markers",
        "load: mark test as load/performance test"
    )
