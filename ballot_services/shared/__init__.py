"""
Shared utilities and models for the ballot services.

This package contains common code used by the API and the tally worker:
- Data models (BallotEvent, enums)
- Eligibility key and lookup token normalisation
- Tally percentage arithmetic
- Redis and RabbitMQ naming constants
"""

from .models import (
    BallotEvent,
    BallotEventType,
    BallotOutcome,
    ProfileRole,
    create_ballot_event,
    normalize_eligibility_key,
    normalize_eligibility_keys,
    normalize_lookup_token,
    compute_percentage,
    get_current_timestamp,
    get_redis_key,
    get_queue_name,
    REDIS_KEYS,
    RABBITMQ_CONFIG,
)

__all__ = [
    'BallotEvent',
    'BallotEventType',
    'BallotOutcome',
    'ProfileRole',
    'create_ballot_event',
    'normalize_eligibility_key',
    'normalize_eligibility_keys',
    'normalize_lookup_token',
    'compute_percentage',
    'get_current_timestamp',
    'get_redis_key',
    'get_queue_name',
    'REDIS_KEYS',
    'RABBITMQ_CONFIG',
]

__version__ = '1.0.0'
