"""
Election lifecycle: creation, activation, deletion and listings.

The lifecycle manager is the only writer of election configuration.
Candidates and eligibility entries are fixed once an election exists.
"""
import logging
from collections import defaultdict
from typing import Dict, List

from ..shared import BallotEventType, create_ballot_event
from .eligibility import EligibilityStore
from .errors import ElectionValidationError, NotAuthorized, NotFound
from .identity import VoterIdentity
from .models import (
    CandidateResponse,
    CreateElectionRequest,
    CreatedElectionResponse,
    ElectionResponse,
    HostCandidateResponse,
    HostedElectionResponse,
    VoterElectionResponse,
)

logger = logging.getLogger(__name__)

MIN_CANDIDATES = 2
MIN_ELIGIBLE_VOTERS = 1


class ElectionLifecycleManager:
    """Creates, toggles, deletes and lists elections."""

    def __init__(self, database, eligibility: EligibilityStore, tally, publisher=None):
        self.database = database
        self.eligibility = eligibility
        self.tally = tally
        self.publisher = publisher

    async def create_election(self, creator: VoterIdentity, request: CreateElectionRequest) -> CreatedElectionResponse:
        """
        Create an election with its candidates and allow-list, all or nothing.

        Raises:
            ElectionValidationError: Empty title, fewer than 2 named
                candidates, no eligible voters, or a repeated lookup token
        """
        title = request.title.strip()
        if not title:
            raise ElectionValidationError("Election title is required", details={"field": "title"})

        candidates = [c for c in request.candidates if c.name.strip()]
        if len(candidates) < MIN_CANDIDATES:
            raise ElectionValidationError(
                f"At least {MIN_CANDIDATES} candidates with names are required",
                details={"field": "candidates", "count": len(candidates)}
            )

        tokens = [c.unique_id for c in candidates if c.unique_id]
        if len(tokens) != len(set(tokens)):
            raise ElectionValidationError(
                "Candidate unique IDs must be distinct",
                details={"field": "candidates.unique_id"}
            )

        keys = self.eligibility.prepare_bulk(request.eligibility_keys)
        if len(keys) < MIN_ELIGIBLE_VOTERS:
            raise ElectionValidationError(
                "At least one eligible voter is required",
                details={"field": "eligibility_keys"}
            )

        election = await self.database.create_election(
            title=title,
            description=request.description,
            created_by=creator.voter_id,
            candidates=[
                {"name": c.name.strip(), "description": c.description, "unique_id": c.unique_id}
                for c in candidates
            ],
            eligibility_keys=keys,
        )

        rows = await self.database.fetch_candidates([election["id"]])
        logger.info(
            f"Election created: id={election['id']}, candidates={len(rows)}, "
            f"eligible_voters={len(keys)}, host={creator.voter_id}"
        )
        await self._publish(BallotEventType.ELECTION_CREATED, election["id"])

        return CreatedElectionResponse(
            **election,
            candidates=[HostCandidateResponse(**_candidate_fields(row, host=True)) for row in rows]
        )

    async def set_election_active(self, caller: VoterIdentity, election_id: str, is_active: bool) -> ElectionResponse:
        """
        Open or close an election. Creator only.

        Raises:
            NotFound: Unknown election
            NotAuthorized: Caller is not the creator
        """
        await self._owned_election(caller, election_id)

        election = await self.database.set_election_active(election_id, is_active)
        if election is None:
            raise NotFound(f"Election {election_id} not found")

        logger.info(f"Election {election_id} is_active set to {is_active}")
        await self.tally.invalidate(election_id)
        await self._publish(BallotEventType.ELECTION_UPDATED, election_id)
        return ElectionResponse(**election)

    async def delete_election(self, caller: VoterIdentity, election_id: str):
        """
        Delete an election with its candidates, allow-list and ballots.
        Creator only. Irreversible.

        Raises:
            NotFound: Unknown election
            NotAuthorized: Caller is not the creator
        """
        await self._owned_election(caller, election_id)

        if not await self.database.delete_election(election_id):
            raise NotFound(f"Election {election_id} not found")

        logger.info(f"Election deleted: id={election_id}, host={caller.voter_id}")
        await self.tally.forget(election_id)
        await self._publish(BallotEventType.ELECTION_DELETED, election_id)

    # Listings

    async def list_voter_elections(self, voter: VoterIdentity) -> List[VoterElectionResponse]:
        """Active elections the voter is eligible for, with the voter's own ballot."""
        elections = await self.database.fetch_elections(
            eligibility_key=voter.eligibility_key,
            active_only=True
        )
        ids = [e["id"] for e in elections]
        candidates = await self._candidates_by_election(ids)
        ballots = await self.database.fetch_voter_ballots(voter.voter_id, ids)

        return [
            VoterElectionResponse(
                **election,
                candidates=[
                    CandidateResponse(**_candidate_fields(row))
                    for row in candidates[election["id"]]
                ],
                has_voted=election["id"] in ballots,
                voted_candidate_id=ballots.get(election["id"]),
            )
            for election in elections
        ]

    async def list_hosted_elections(self, host: VoterIdentity) -> List[HostedElectionResponse]:
        """Elections created by the caller, with results and turnout."""
        elections = await self.database.fetch_elections(created_by=host.voter_id)
        return await self._with_results(elections)

    async def list_all_elections(self, caller: VoterIdentity) -> List[HostedElectionResponse]:
        """
        Every election, with results and turnout. Admin only.

        Raises:
            NotAuthorized: Caller is not an admin
        """
        if not caller.is_admin:
            raise NotAuthorized("Admin role required")
        elections = await self.database.fetch_elections()
        return await self._with_results(elections)

    # Authorization

    async def authorize_results(self, caller: VoterIdentity, election_id: str):
        """
        Results are visible to the creator, admins and eligible voters.

        Raises:
            NotFound: Unknown election
            NotAuthorized: None of the above
        """
        election = await self._election(election_id)
        if caller.is_admin or election["created_by"] == caller.voter_id:
            return
        if await self.eligibility.is_eligible(election_id, caller.eligibility_key):
            return
        raise NotAuthorized("You may not view the results of this election")

    async def authorize_turnout(self, caller: VoterIdentity, election_id: str):
        """
        Turnout is visible to the creator and admins only.

        Raises:
            NotFound: Unknown election
            NotAuthorized: Caller is neither
        """
        election = await self._election(election_id)
        if caller.is_admin or election["created_by"] == caller.voter_id:
            return
        raise NotAuthorized("Only the election host may view turnout")

    async def _election(self, election_id: str) -> Dict:
        election = await self.database.fetch_election(election_id)
        if election is None:
            raise NotFound(f"Election {election_id} not found")
        return election

    async def _owned_election(self, caller: VoterIdentity, election_id: str) -> Dict:
        election = await self._election(election_id)
        if election["created_by"] != caller.voter_id:
            logger.warning(f"Caller {caller.voter_id} is not the host of election {election_id}")
            raise NotAuthorized("Only the election host may change this election")
        return election

    async def _candidates_by_election(self, election_ids: List[str]) -> Dict[str, List[Dict]]:
        grouped = defaultdict(list)
        for row in await self.database.fetch_candidates(election_ids):
            grouped[row["election_id"]].append(row)
        return grouped

    async def _with_results(self, elections: List[Dict]) -> List[HostedElectionResponse]:
        candidates = await self._candidates_by_election([e["id"] for e in elections])
        listed = []
        for election in elections:
            listed.append(
                HostedElectionResponse(
                    **election,
                    candidates=[
                        HostCandidateResponse(**_candidate_fields(row, host=True))
                        for row in candidates[election["id"]]
                    ],
                    results=await self.tally.get_results(election["id"]),
                    turnout=await self.tally.get_turnout(election["id"]),
                )
            )
        return listed

    async def _publish(self, event_type: BallotEventType, election_id: str):
        if self.publisher is not None:
            await self.publisher.publish_event(create_ballot_event(event_type, election_id))


def _candidate_fields(row: Dict, host: bool = False) -> Dict:
    fields = {"id": row["id"], "name": row["name"], "description": row.get("description")}
    if host:
        fields["unique_id"] = row.get("unique_id")
    return fields
