"""
Shared data models and utilities for the ballot services.

This module contains:
- BallotEvent: Data structure for change-feed messages passed through RabbitMQ
- Eligibility key and lookup token normalisation
- Tally arithmetic shared by the API and the tally worker
- Redis key and RabbitMQ naming tables
"""

import json
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Dict, Any, Iterable, List


class BallotEventType(str, Enum):
    """Kinds of change-feed events."""
    BALLOT_CAST = "ballot.cast"
    ELECTION_CREATED = "election.created"
    ELECTION_UPDATED = "election.updated"
    ELECTION_DELETED = "election.deleted"


class BallotOutcome(str, Enum):
    """Outcome of a cast-vote attempt, used for metrics labels and logs."""
    RECORDED = "recorded"
    ALREADY_VOTED = "already_voted"
    NOT_ELIGIBLE = "not_eligible"
    ELECTION_CLOSED = "election_closed"
    INVALID_CANDIDATE = "invalid_candidate"
    NOT_AUTHENTICATED = "not_authenticated"


class ProfileRole(str, Enum):
    """Roles carried by identity-provider profiles."""
    VOTER = "voter"
    ADMIN = "admin"


@dataclass
class BallotEvent:
    """
    Change-feed message published after every write that affects a tally.

    Attributes:
        event_type: One of BallotEventType values
        election_id: Election the write belongs to
        occurred_at: ISO format timestamp of the write
        candidate_id: Candidate referenced by the ballot (ballot.cast only)
        ballot_id: Ballot identifier (ballot.cast only)

    The voter identity is deliberately absent: the feed is broad and
    consumers only need to know which election to re-pull.
    """
    event_type: str
    election_id: str
    occurred_at: str
    candidate_id: Optional[str] = None
    ballot_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return asdict(self)

    def to_json(self) -> str:
        """Convert to JSON string for message queue."""
        return json.dumps(self.to_dict())

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'BallotEvent':
        """Create BallotEvent from dictionary, ignoring unknown keys."""
        known = {k: data[k] for k in cls.__dataclass_fields__ if k in data}
        return cls(**known)

    @classmethod
    def from_json(cls, json_str: str) -> 'BallotEvent':
        """Create BallotEvent from JSON string."""
        return cls.from_dict(json.loads(json_str))

    @property
    def routing_key(self) -> str:
        return BallotEventType(self.event_type).value

    def validate(self) -> tuple[bool, Optional[str]]:
        """
        Validate event data.

        Returns:
            tuple: (is_valid, error_message)
        """
        if self.event_type not in {t.value for t in BallotEventType}:
            return False, f"Unknown event type '{self.event_type}'"

        if not self.election_id:
            return False, "Election ID is required"

        if self.event_type == BallotEventType.BALLOT_CAST and not self.candidate_id:
            return False, "Candidate ID is required for ballot.cast events"

        return True, None


def create_ballot_event(
    event_type: BallotEventType,
    election_id: Any,
    candidate_id: Any = None,
    ballot_id: Any = None,
    occurred_at: Optional[str] = None
) -> BallotEvent:
    """
    Create a BallotEvent with string identifiers.

    Args:
        event_type: Kind of change
        election_id: Election identifier (UUID or string)
        candidate_id: Optional candidate identifier
        ballot_id: Optional ballot identifier
        occurred_at: Optional timestamp (defaults to current time)

    Returns:
        BallotEvent: Constructed event
    """
    return BallotEvent(
        event_type=BallotEventType(event_type).value,
        election_id=str(election_id),
        occurred_at=occurred_at or get_current_timestamp(),
        candidate_id=str(candidate_id) if candidate_id is not None else None,
        ballot_id=str(ballot_id) if ballot_id is not None else None,
    )


def normalize_eligibility_key(key: Optional[str]) -> str:
    """
    Normalise an eligibility key (roll number).

    Keys are compared trimmed and upper-cased so that "124bt10297 " and
    "124BT10297" name the same voter.

    Args:
        key: Raw key as typed or pasted by a host, or as held by a profile

    Returns:
        str: Normalised key (empty string for blank input)
    """
    if key is None:
        return ""
    return key.strip().upper()


def normalize_eligibility_keys(keys: Iterable[Optional[str]]) -> List[str]:
    """
    Normalise a pasted voter list, dropping blanks and keeping the first
    occurrence of each repeated key.

    Args:
        keys: Raw keys in submission order

    Returns:
        list: Distinct normalised keys in first-seen order
    """
    seen = set()
    result = []
    for raw in keys:
        key = normalize_eligibility_key(raw)
        if key and key not in seen:
            seen.add(key)
            result.append(key)
    return result


def normalize_lookup_token(token: Optional[str]) -> Optional[str]:
    """
    Normalise a candidate lookup token.

    Tokens are case-sensitive secrets; only surrounding whitespace is
    removed. Blank tokens mean "no token".
    """
    if token is None:
        return None
    token = token.strip()
    return token or None


def compute_percentage(count: int, total: int) -> float:
    """
    Share of ``total`` held by ``count`` as a percentage with one decimal.

    Returns 0.0 when total is 0.
    """
    if total <= 0:
        return 0.0
    return round(count / total * 100, 1)


def get_current_timestamp() -> str:
    """
    Get current UTC timestamp in ISO format.

    Returns:
        str: ISO format timestamp with Z suffix
    """
    return datetime.now(timezone.utc).replace(tzinfo=None).isoformat() + 'Z'


# Redis key templates
REDIS_KEYS = {
    'tally_version': 'tally_version:{}',   # COUNTER bumped on every ledger write
    'tally_cache': 'tally:{}:{}',          # STRING cached results per version
}


def get_redis_key(key_type: str, *args) -> str:
    """
    Get formatted Redis key.

    Args:
        key_type: Type of key from REDIS_KEYS
        *args: Arguments to format into key

    Returns:
        str: Formatted Redis key
    """
    key_template = REDIS_KEYS.get(key_type)
    if key_template and '{}' in key_template:
        return key_template.format(*args)
    return key_template


# RabbitMQ exchange and queue names
RABBITMQ_CONFIG = {
    'exchange': 'ballots.exchange',
    'queues': {
        'tally_refresh': 'ballots.tally_refresh',
    },
    'bindings': ['ballot.*', 'election.*'],
}


def get_queue_name(queue_type: str) -> str:
    """
    Get RabbitMQ queue name.

    Args:
        queue_type: Type of queue (tally_refresh)

    Returns:
        str: Queue name
    """
    return RABBITMQ_CONFIG['queues'].get(queue_type, '')
