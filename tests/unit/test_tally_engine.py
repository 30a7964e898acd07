"""Unit tests for results, turnout and candidate self-service results."""

import pytest
from prometheus_client import REGISTRY

from ballot_services.ballot_api.errors import NotFound
from ballot_services.ballot_api.models import CreateElectionRequest
from ballot_services.ballot_api.tally import rank_candidates


def rows(**counts) -> list:
    return [
        {"candidate_id": f"id-{name}", "name": name, "description": None, "vote_count": count}
        for name, count in counts.items()
    ]


class TestRankCandidates:
    """Ordering, leaders and percentages."""

    def test_tied_leaders_scenario(self):
        """Test: A=0, B=3, C=3 gives [B, C, A] with B and C both leading."""
        tallies, total = rank_candidates(rows(A=0, B=3, C=3))

        assert total == 6
        assert [t.name for t in tallies] == ["B", "C", "A"]
        assert [t.is_leading for t in tallies] == [True, True, False]
        assert [t.percentage for t in tallies] == [50.0, 50.0, 0.0]

    def test_no_ballots_means_no_leader(self):
        tallies, total = rank_candidates(rows(A=0, B=0))

        assert total == 0
        assert all(t.percentage == 0.0 for t in tallies)
        assert not any(t.is_leading for t in tallies)

    def test_percentages_sum_to_one_hundred(self):
        tallies, total = rank_candidates(rows(A=1, B=1, C=1, D=4))

        assert total == 7
        assert abs(sum(t.percentage for t in tallies) - 100.0) <= 0.1 * len(tallies)
        assert tallies[0].name == "D"
        assert [t.is_leading for t in tallies] == [True, False, False, False]

    def test_empty_election(self):
        assert rank_candidates([]) == ([], 0)


@pytest.fixture
async def six_voter_election(services, database, host):
    """Election with candidates A, B, C and six ballots: B=3, C=3."""
    keys = [f"124BT2000{i}" for i in range(6)]
    for i, key in enumerate(keys):
        database.add_profile(f"six-{i}", key)
    created = await services.lifecycle.create_election(host, CreateElectionRequest(
        title="Six Voters",
        candidates=[{"name": "A"}, {"name": "B"}, {"name": "C"}],
        eligibility_keys=keys,
    ))
    ids = {c.name: c.id for c in created.candidates}
    for i in range(6):
        database.add_ballot(created.id, ids["B"] if i < 3 else ids["C"], f"six-{i}")
    return created


@pytest.mark.asyncio
class TestGetResults:
    """Results derived from the ledger."""

    async def test_results_match_ledger(self, services, six_voter_election):
        results = await services.tally.get_results(six_voter_election.id)

        assert results.total_votes == 6
        assert sum(c.vote_count for c in results.candidates) == 6
        assert [(c.name, c.vote_count, c.is_leading) for c in results.candidates] == [
            ("B", 3, True), ("C", 3, True), ("A", 0, False)
        ]

    async def test_unknown_election_is_not_found(self, services):
        with pytest.raises(NotFound):
            await services.tally.get_results("00000000-0000-0000-0000-000000000000")

    async def test_cached_results_are_served_until_the_next_write(
        self, services, database, election, make_voter, monkeypatch
    ):
        """Test: a cache hit skips the ledger; a ballot bumps the version so the next read recomputes."""
        calls = []
        fetch_tally = database.fetch_tally

        async def counting_fetch_tally(election_id):
            calls.append(election_id)
            return await fetch_tally(election_id)

        monkeypatch.setattr(database, "fetch_tally", counting_fetch_tally)

        hits_before = REGISTRY.get_sample_value("tally_cache_requests_total", {"result": "hit"}) or 0.0
        first = await services.tally.get_results(election.id)
        second = await services.tally.get_results(election.id)

        assert len(calls) == 1
        assert second == first
        assert REGISTRY.get_sample_value("tally_cache_requests_total", {"result": "hit"}) == hits_before + 1

        ids = {c.name: c.id for c in election.candidates}
        await services.ledger.cast_vote(make_voter("voter-1", "124BT10001"), election.id, ids["A"])
        third = await services.tally.get_results(election.id)

        assert len(calls) == 2
        assert third.total_votes == 1

    async def test_entry_from_before_a_write_is_never_served(self, services, database, fake_redis, election):
        """Test: a ballot written behind the cache is visible once its version is bumped."""
        await services.tally.get_results(election.id)
        ids = {c.name: c.id for c in election.candidates}
        database.add_ballot(election.id, ids["B"], "voter-1")

        await services.tally.invalidate(election.id)
        results = await services.tally.get_results(election.id)

        assert results.total_votes == 1
        assert f"tally:{election.id}:0" in fake_redis.data

    async def test_redis_outage_falls_back_to_ledger(self, services, database, fake_redis, election):
        fake_redis.fail = True
        ids = {c.name: c.id for c in election.candidates}
        database.add_ballot(election.id, ids["C"], "voter-3")

        results = await services.tally.get_results(election.id)

        assert results.total_votes == 1
        assert results.candidates[0].name == "C"


@pytest.mark.asyncio
class TestGetTurnout:
    """Turnout derived from the allow-list and ballot voter identities."""

    async def test_one_entry_per_eligibility_key(self, services, database, election):
        ids = {c.name: c.id for c in election.candidates}
        database.add_ballot(election.id, ids["A"], "voter-1")
        database.add_ballot(election.id, ids["B"], "voter-2")

        turnout = await services.tally.get_turnout(election.id)

        assert turnout.eligible_voters == 3
        assert len(turnout.voters) == 3
        assert turnout.voted_count == 2
        assert turnout.turnout_percentage == 66.7
        assert turnout.unmapped_ballots == 0
        statuses = {v.eligibility_key: (v.name, v.has_voted) for v in turnout.voters}
        assert statuses == {
            "124BT10001": ("Asha Rao", True),
            # profile holds "124bt10002 ", matched after normalisation
            "124BT10002": ("Ben Okafor", True),
            "124BT10003": ("Chen Li", False),
        }

    async def test_unmapped_ballots_are_counted_not_raised(self, services, database, election):
        """Test: ballots without a usable profile mapping leave every entry not-voted."""
        ids = {c.name: c.id for c in election.candidates}
        database.add_ballot(election.id, ids["A"], "ghost")
        database.add_ballot(election.id, ids["A"], "outsider")

        before = REGISTRY.get_sample_value("turnout_unmapped_ballots_total") or 0.0
        turnout = await services.tally.get_turnout(election.id)

        assert turnout.unmapped_ballots == 2
        assert turnout.voted_count == 0
        assert not any(v.has_voted for v in turnout.voters)
        assert REGISTRY.get_sample_value("turnout_unmapped_ballots_total") == before + 2

    async def test_unknown_election_is_not_found(self, services):
        with pytest.raises(NotFound):
            await services.tally.get_turnout("00000000-0000-0000-0000-000000000000")


@pytest.mark.asyncio
class TestCandidateSelfResults:
    """Lookup token access."""

    async def test_token_returns_own_tally(self, services, database, host):
        election_request = CreateElectionRequest(
            title="Tokens",
            candidates=[{"name": "P", "unique_id": "TOKEN-P"}, {"name": "Q"}],
            eligibility_keys=["124BT10001", "124BT10002", "124BT10003"],
        )
        created = await services.lifecycle.create_election(host, election_request)
        ids = {c.name: c.id for c in created.candidates}
        database.add_ballot(created.id, ids["P"], "voter-1")
        database.add_ballot(created.id, ids["Q"], "voter-2")
        database.add_ballot(created.id, ids["Q"], "voter-3")

        result = await services.tally.get_candidate_self_results("  TOKEN-P ")

        assert result.candidate_name == "P"
        assert result.election_title == "Tokens"
        assert result.vote_count == 1
        assert result.total_votes == 3
        assert result.percentage == 33.3

    async def test_zero_ballots_is_zero_percent(self, services, election):
        result = await services.tally.get_candidate_self_results("CAND-A")

        assert result.vote_count == 0
        assert result.total_votes == 0
        assert result.percentage == 0.0

    @pytest.mark.parametrize("token", ["", "   ", "NO-SUCH-TOKEN", "cand-a"])
    async def test_blank_or_unknown_token_is_not_found(self, services, election, token):
        with pytest.raises(NotFound):
            await services.tally.get_candidate_self_results(token)
