"""
Ballot ledger: the cast-vote write path.

Exactly one ballot per (election, voter) pair. The gate checks below give
callers precise errors, but uniqueness itself is enforced by the
``votes_election_voter_key`` constraint inside ``Database.insert_ballot``.
"""
import logging

from ..shared import BallotEventType, BallotOutcome, create_ballot_event
from .errors import AlreadyVoted, ElectionClosed, InvalidCandidate, NotEligible
from .identity import VoterIdentity
from .metrics import ballot_rejections, ballots_cast
from .models import BallotResponse

logger = logging.getLogger(__name__)


class BallotLedger:
    """Append-only ballot store front."""

    def __init__(self, database, eligibility, tally, publisher=None):
        self.database = database
        self.eligibility = eligibility
        self.tally = tally
        self.publisher = publisher

    async def cast_vote(self, voter: VoterIdentity, election_id: str, candidate_id: str) -> BallotResponse:
        """
        Record one ballot.

        Args:
            voter: Resolved caller
            election_id: Target election
            candidate_id: Chosen candidate

        Returns:
            BallotResponse: The durably recorded ballot

        Raises:
            NotEligible: Caller's key is not on the election's list
            ElectionClosed: Election is inactive
            InvalidCandidate: Candidate is not part of the election
            AlreadyVoted: A ballot already exists for this voter, including
                when the election has since closed
        """
        election_id = str(election_id)
        candidate_id = str(candidate_id)

        try:
            if not await self.eligibility.is_eligible(election_id, voter.eligibility_key):
                raise NotEligible()

            election = await self.database.fetch_election(election_id)
            if election is None or not election["is_active"]:
                raise ElectionClosed()

            candidate = await self.database.fetch_candidate(candidate_id)
            if candidate is None or candidate["election_id"] != election_id:
                raise InvalidCandidate()

            ballot = await self.database.insert_ballot(election_id, candidate_id, voter.voter_id)

        except NotEligible:
            self._reject(BallotOutcome.NOT_ELIGIBLE, voter, election_id)
            raise
        except ElectionClosed as e:
            await self._raise_if_already_voted(voter, election_id, e)
            self._reject(BallotOutcome.ELECTION_CLOSED, voter, election_id)
            raise
        except InvalidCandidate as e:
            await self._raise_if_already_voted(voter, election_id, e)
            self._reject(BallotOutcome.INVALID_CANDIDATE, voter, election_id)
            raise
        except AlreadyVoted:
            self._reject(BallotOutcome.ALREADY_VOTED, voter, election_id)
            raise

        ballots_cast.inc()
        logger.info(
            f"Ballot recorded: ballot={ballot['id']}, "
            f"election={election_id}, candidate={candidate_id}"
        )

        await self.tally.invalidate(election_id)
        if self.publisher is not None:
            await self.publisher.publish_event(
                create_ballot_event(
                    BallotEventType.BALLOT_CAST,
                    election_id,
                    candidate_id=candidate_id,
                    ballot_id=ballot["id"],
                )
            )

        return BallotResponse(
            ballot_id=str(ballot["id"]),
            election_id=election_id,
            candidate_id=candidate_id,
            cast_at=ballot["created_at"],
        )

    async def _raise_if_already_voted(self, voter: VoterIdentity, election_id: str, cause: Exception):
        """Raise AlreadyVoted when the voter already holds a ballot in the election."""
        if await self.database.fetch_ballot_for_voter(election_id, voter.voter_id) is None:
            return
        self._reject(BallotOutcome.ALREADY_VOTED, voter, election_id)
        raise AlreadyVoted() from cause

    def _reject(self, outcome: BallotOutcome, voter: VoterIdentity, election_id: str):
        ballot_rejections.labels(reason=outcome.value).inc()
        logger.info(f"Ballot rejected: reason={outcome.value}, election={election_id}, voter={voter.voter_id}")
