"""Domain errors raised by the ballot engine and mapped to HTTP responses."""
from typing import Optional


class BallotError(Exception):
    """Base class for every error the ballot engine reports to callers."""

    status_code: int = 400
    error: str = "BallotError"
    default_message: str = "Request could not be processed"

    def __init__(self, message: Optional[str] = None, details: Optional[dict] = None):
        self.message = message or self.default_message
        self.details = details or {}
        super().__init__(self.message)


class NotAuthenticated(BallotError):
    """No identity could be resolved for the caller."""
    status_code = 401
    error = "NotAuthenticated"
    default_message = "Authentication required"


class NotAuthorized(BallotError):
    """Caller is authenticated but may not act on this election."""
    status_code = 403
    error = "NotAuthorized"
    default_message = "You are not allowed to perform this action"


class NotEligible(BallotError):
    """Caller's eligibility key is not on the election's allow-list."""
    status_code = 403
    error = "NotEligible"
    default_message = "You are not eligible to vote in this election"


class ElectionClosed(BallotError):
    """Election is not active. Callers must not retry automatically."""
    status_code = 409
    error = "ElectionClosed"
    default_message = "This election is not accepting votes"


class InvalidCandidate(BallotError):
    """Candidate does not belong to the target election."""
    status_code = 422
    error = "InvalidCandidate"
    default_message = "Candidate does not belong to this election"


class AlreadyVoted(BallotError):
    """
    A ballot already exists for this (election, voter) pair.

    Benign: the voter's intent is already satisfied, so retries of
    cast-vote resolve here instead of producing a second ballot.
    """
    status_code = 409
    error = "AlreadyVoted"
    default_message = "You have already voted in this election"


class ElectionValidationError(BallotError):
    """Malformed create-election input. Raised before any write."""
    status_code = 422
    error = "ValidationError"
    default_message = "Invalid election definition"


class NotFound(BallotError):
    """Unknown election, candidate or lookup token."""
    status_code = 404
    error = "NotFound"
    default_message = "Not found"


class StorageUnavailable(BallotError):
    """Transient storage failure. Safe to retry for reads and cast-vote."""
    status_code = 503
    error = "StorageUnavailable"
    default_message = "Storage temporarily unavailable, please retry"
