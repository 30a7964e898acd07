"""Unit tests for the shared models and helpers."""

import json

import pytest

from ballot_services.shared import (
    BallotEvent,
    BallotEventType,
    compute_percentage,
    create_ballot_event,
    get_queue_name,
    get_redis_key,
    normalize_eligibility_key,
    normalize_eligibility_keys,
    normalize_lookup_token,
)


class TestNormalisation:
    """Eligibility keys and lookup tokens."""

    def test_eligibility_key_is_trimmed_and_upper_cased(self):
        assert normalize_eligibility_key("  124bt10297 ") == "124BT10297"

    def test_blank_eligibility_key_becomes_empty(self):
        assert normalize_eligibility_key(None) == ""
        assert normalize_eligibility_key("   ") == ""

    def test_key_list_drops_blanks_and_keeps_first_occurrence(self):
        keys = ["124bt1", "", "124BT2", " 124BT1 ", None, "124bt2"]
        assert normalize_eligibility_keys(keys) == ["124BT1", "124BT2"]

    def test_lookup_token_keeps_case(self):
        assert normalize_lookup_token("  Cand-A ") == "Cand-A"

    def test_blank_lookup_token_means_no_token(self):
        assert normalize_lookup_token("   ") is None
        assert normalize_lookup_token(None) is None


class TestPercentages:
    """Tally arithmetic."""

    def test_zero_total_is_zero_percent(self):
        assert compute_percentage(0, 0) == 0.0
        assert compute_percentage(3, 0) == 0.0

    def test_rounded_to_one_decimal(self):
        assert compute_percentage(1, 3) == 33.3
        assert compute_percentage(2, 3) == 66.7
        assert compute_percentage(3, 6) == 50.0


class TestBallotEvent:
    """Change-feed messages."""

    def test_ballot_cast_event_round_trips_through_json(self):
        event = create_ballot_event(
            BallotEventType.BALLOT_CAST, "e-1", candidate_id="c-1", ballot_id="b-1"
        )
        parsed = BallotEvent.from_json(event.to_json())

        assert parsed == event
        assert parsed.routing_key == "ballot.cast"
        assert parsed.validate() == (True, None)

    def test_event_never_carries_voter_identity(self):
        event = create_ballot_event(BallotEventType.BALLOT_CAST, "e-1", candidate_id="c-1")
        assert "voter_id" not in json.loads(event.to_json())

    def test_unknown_fields_are_ignored(self):
        data = {
            "event_type": "election.updated",
            "election_id": "e-1",
            "occurred_at": "2024-01-15T10:30:00Z",
            "extra": "ignored",
        }
        event = BallotEvent.from_dict(data)
        assert event.routing_key == "election.updated"

    @pytest.mark.parametrize("data,error", [
        ({"event_type": "vote.cast", "election_id": "e-1", "occurred_at": "t"}, "Unknown event type"),
        ({"event_type": "ballot.cast", "election_id": "", "occurred_at": "t"}, "Election ID"),
        ({"event_type": "ballot.cast", "election_id": "e-1", "occurred_at": "t"}, "Candidate ID"),
    ])
    def test_invalid_events(self, data, error):
        is_valid, message = BallotEvent.from_dict(data).validate()
        assert not is_valid
        assert error in message


class TestNaming:
    """Redis keys and RabbitMQ names."""

    def test_tally_cache_keys_are_versioned(self):
        assert get_redis_key("tally_version", "e-1") == "tally_version:e-1"
        assert get_redis_key("tally_cache", "e-1", 4) == "tally:e-1:4"

    def test_queue_name(self):
        assert get_queue_name("tally_refresh") == "ballots.tally_refresh"
        assert get_queue_name("unknown") == ""
