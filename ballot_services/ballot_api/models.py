"""Pydantic models for request/response validation."""
from datetime import datetime
from typing import Literal, Optional
from uuid import UUID

from pydantic import BaseModel, Field, validator

from ..shared import normalize_lookup_token


class CandidateInput(BaseModel):
    """Candidate row of a create-election request."""

    name: str = Field(default="", description="Candidate name (blank rows are ignored)")
    description: Optional[str] = Field(default=None, description="Optional description")
    unique_id: Optional[str] = Field(
        default=None,
        description="Optional lookup token the candidate uses to read their own results"
    )

    @validator("name")
    def strip_name(cls, v):
        return (v or "").strip()

    @validator("description")
    def strip_description(cls, v):
        if v is None:
            return None
        return v.strip() or None

    @validator("unique_id")
    def strip_unique_id(cls, v):
        return normalize_lookup_token(v)


class CreateElectionRequest(BaseModel):
    """Create-election request model."""

    title: str = Field(..., description="Election title")
    description: Optional[str] = Field(default=None, description="Optional description")
    candidates: list[CandidateInput] = Field(..., description="At least 2 named candidates")
    eligibility_keys: list[str] = Field(..., description="Eligibility keys (roll numbers) allowed to vote")

    @validator("title")
    def strip_title(cls, v):
        return (v or "").strip()

    @validator("description")
    def strip_description(cls, v):
        if v is None:
            return None
        return v.strip() or None

    class Config:
        json_schema_extra = {
            "example": {
                "title": "Student Council President 2024",
                "description": "Annual council election",
                "candidates": [
                    {"name": "Asha Rao", "unique_id": "ASHA-2024"},
                    {"name": "Ben Okafor"}
                ],
                "eligibility_keys": ["124BT10297", "124BT10298"]
            }
        }


class CastVoteRequest(BaseModel):
    """Cast-vote request model."""

    candidate_id: UUID = Field(..., description="Candidate to vote for")

    class Config:
        json_schema_extra = {
            "example": {"candidate_id": "4b0f6c3e-8f7a-4d8e-9a61-0c5f6f3b2d10"}
        }


class SetActiveRequest(BaseModel):
    """Toggle an election's active flag."""

    is_active: bool


class CandidateSelfResultsRequest(BaseModel):
    """Candidate self-service lookup by token."""

    lookup_token: str = Field(..., description="Candidate lookup token")


class CandidateResponse(BaseModel):
    """Candidate as shown to voters (no lookup token)."""

    id: str
    name: str
    description: Optional[str] = None


class HostCandidateResponse(CandidateResponse):
    """Candidate as shown to the host, including its lookup token."""

    unique_id: Optional[str] = None


class ElectionResponse(BaseModel):
    """Election summary."""

    id: str
    title: str
    description: Optional[str] = None
    created_by: str
    is_active: bool
    created_at: datetime
    eligible_voter_count: int = 0


class CreatedElectionResponse(ElectionResponse):
    """Election returned to its host after creation."""

    candidates: list[HostCandidateResponse]


class BallotResponse(BaseModel):
    """Recorded ballot."""

    ballot_id: str = Field(..., description="Ballot identifier")
    election_id: str
    candidate_id: str
    status: Literal["recorded"] = "recorded"
    cast_at: datetime
    message: str = Field(default="Vote recorded successfully")


class CandidateTally(BaseModel):
    """One candidate's share of an election's ballots."""

    candidate_id: str
    name: str
    description: Optional[str] = None
    vote_count: int
    percentage: float
    is_leading: bool


class ElectionResultsResponse(BaseModel):
    """Tally of an election."""

    election_id: str
    title: str
    is_active: bool
    total_votes: int
    candidates: list[CandidateTally]
    computed_at: datetime

    class Config:
        json_schema_extra = {
            "example": {
                "election_id": "2b1d...",
                "title": "Student Council President 2024",
                "is_active": True,
                "total_votes": 6,
                "candidates": [
                    {"candidate_id": "b...", "name": "B", "vote_count": 3,
                     "percentage": 50.0, "is_leading": True},
                    {"candidate_id": "c...", "name": "C", "vote_count": 3,
                     "percentage": 50.0, "is_leading": True},
                    {"candidate_id": "a...", "name": "A", "vote_count": 0,
                     "percentage": 0.0, "is_leading": False}
                ],
                "computed_at": "2024-01-15T10:30:00"
            }
        }


class VoterStatus(BaseModel):
    """Whether one eligibility key has voted."""

    eligibility_key: str
    name: Optional[str] = None
    has_voted: bool


class TurnoutResponse(BaseModel):
    """Voter turnout of an election."""

    election_id: str
    eligible_voters: int
    voted_count: int
    turnout_percentage: float
    unmapped_ballots: int = Field(
        default=0,
        description="Ballots whose voter could not be mapped to an eligibility key of this election"
    )
    voters: list[VoterStatus]


class CandidateSelfResultsResponse(BaseModel):
    """A candidate's own tally, reached through its lookup token."""

    candidate_id: str
    candidate_name: str
    election_id: str
    election_title: str
    is_active: bool
    vote_count: int
    total_votes: int
    percentage: float


class VoterElectionResponse(ElectionResponse):
    """Election as listed for an eligible voter."""

    candidates: list[CandidateResponse]
    has_voted: bool
    voted_candidate_id: Optional[str] = None


class HostedElectionResponse(ElectionResponse):
    """Election as listed for its host or an admin."""

    candidates: list[HostCandidateResponse]
    results: ElectionResultsResponse
    turnout: TurnoutResponse


class HealthResponse(BaseModel):
    """Health check response model."""

    status: Literal["healthy", "degraded", "unhealthy"] = Field(..., description="Overall health status")
    services: dict = Field(..., description="Status of individual services")
    timestamp: datetime = Field(default_factory=datetime.utcnow, description="Health check timestamp")

    class Config:
        json_schema_extra = {
            "example": {
                "status": "healthy",
                "services": {
                    "postgresql": "connected",
                    "redis": "connected",
                    "rabbitmq": "connected"
                },
                "timestamp": "2024-01-15T10:30:00"
            }
        }


class ErrorResponse(BaseModel):
    """Error response model."""

    error: str = Field(..., description="Error type")
    message: str = Field(..., description="Error message")
    details: dict = Field(default_factory=dict, description="Additional error details")

    class Config:
        json_schema_extra = {
            "example": {
                "error": "AlreadyVoted",
                "message": "You have already voted in this election",
                "details": {}
            }
        }
