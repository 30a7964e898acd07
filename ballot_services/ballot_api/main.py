"""
FastAPI application for the ballot API.

Identity is taken from a header set by the upstream identity provider
(``settings.IDENTITY_HEADER``) and resolved through the profiles table.
"""
import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from .config import settings
from .errors import BallotError
from .identity import VoterIdentity
from .metrics import request_duration
from .models import (
    BallotResponse,
    CandidateSelfResultsRequest,
    CandidateSelfResultsResponse,
    CastVoteRequest,
    CreateElectionRequest,
    CreatedElectionResponse,
    ElectionResponse,
    ElectionResultsResponse,
    ErrorResponse,
    HealthResponse,
    HostedElectionResponse,
    SetActiveRequest,
    TurnoutResponse,
    VoterElectionResponse,
)
from .services import Services, close_services, connect_services

# Configure logging
logging.basicConfig(
    level=logging.INFO if not settings.DEBUG else logging.DEBUG,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

# Rate limiter
limiter = Limiter(key_func=get_remote_address)

router = APIRouter(prefix=f"/api/{settings.API_VERSION}")

ERROR_RESPONSES = {
    401: {"model": ErrorResponse, "description": "No resolvable identity"},
    403: {"model": ErrorResponse, "description": "Not allowed"},
    404: {"model": ErrorResponse, "description": "Not found"},
    503: {"model": ErrorResponse, "description": "Storage temporarily unavailable"},
}


def get_services(request: Request) -> Services:
    return request.app.state.services


async def current_voter(request: Request, services: Services = Depends(get_services)) -> VoterIdentity:
    """Resolve the caller from the identity header."""
    return await services.identity.resolve(request.headers.get(settings.IDENTITY_HEADER))


def internal_error(action: str, e: Exception) -> HTTPException:
    logger.error(f"Error {action}: {e}")
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail="Internal server error"
    )


@router.post(
    "/elections",
    response_model=CreatedElectionResponse,
    status_code=status.HTTP_201_CREATED,
    responses={**ERROR_RESPONSES, 422: {"model": ErrorResponse, "description": "Invalid election"}}
)
async def create_election(
    election: CreateElectionRequest,
    voter: VoterIdentity = Depends(current_voter),
    services: Services = Depends(get_services)
) -> CreatedElectionResponse:
    """
    Create an election hosted by the caller.

    - **title**: Non-empty title
    - **candidates**: At least 2 rows with names; blank rows are ignored
    - **eligibility_keys**: At least 1 key; keys are trimmed, upper-cased and de-duplicated
    """
    try:
        return await services.lifecycle.create_election(voter, election)
    except BallotError:
        raise
    except Exception as e:
        raise internal_error("creating election", e)


@router.get("/elections", response_model=list[VoterElectionResponse], responses=ERROR_RESPONSES)
async def list_voter_elections(
    voter: VoterIdentity = Depends(current_voter),
    services: Services = Depends(get_services)
) -> list[VoterElectionResponse]:
    """Active elections the caller may vote in, with the caller's own ballot if any."""
    try:
        return await services.lifecycle.list_voter_elections(voter)
    except BallotError:
        raise
    except Exception as e:
        raise internal_error("listing elections", e)


@router.get("/elections/hosted", response_model=list[HostedElectionResponse], responses=ERROR_RESPONSES)
async def list_hosted_elections(
    voter: VoterIdentity = Depends(current_voter),
    services: Services = Depends(get_services)
) -> list[HostedElectionResponse]:
    """Elections hosted by the caller, with results and turnout."""
    try:
        return await services.lifecycle.list_hosted_elections(voter)
    except BallotError:
        raise
    except Exception as e:
        raise internal_error("listing hosted elections", e)


@router.get("/admin/elections", response_model=list[HostedElectionResponse], responses=ERROR_RESPONSES)
async def list_all_elections(
    voter: VoterIdentity = Depends(current_voter),
    services: Services = Depends(get_services)
) -> list[HostedElectionResponse]:
    """Every election. Admin only."""
    try:
        return await services.lifecycle.list_all_elections(voter)
    except BallotError:
        raise
    except Exception as e:
        raise internal_error("listing all elections", e)


@router.patch("/elections/{election_id}", response_model=ElectionResponse, responses=ERROR_RESPONSES)
async def set_election_active(
    election_id: UUID,
    body: SetActiveRequest,
    voter: VoterIdentity = Depends(current_voter),
    services: Services = Depends(get_services)
) -> ElectionResponse:
    """Open or close voting. Host only."""
    try:
        return await services.lifecycle.set_election_active(voter, str(election_id), body.is_active)
    except BallotError:
        raise
    except Exception as e:
        raise internal_error(f"updating election {election_id}", e)


@router.delete(
    "/elections/{election_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    response_class=Response,
    responses=ERROR_RESPONSES
)
async def delete_election(
    election_id: UUID,
    voter: VoterIdentity = Depends(current_voter),
    services: Services = Depends(get_services)
):
    """Delete an election with its candidates, voter list and ballots. Host only."""
    try:
        await services.lifecycle.delete_election(voter, str(election_id))
    except BallotError:
        raise
    except Exception as e:
        raise internal_error(f"deleting election {election_id}", e)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post(
    "/elections/{election_id}/votes",
    response_model=BallotResponse,
    status_code=status.HTTP_201_CREATED,
    responses={
        **ERROR_RESPONSES,
        409: {"model": ErrorResponse, "description": "Already voted or election closed"},
        422: {"model": ErrorResponse, "description": "Candidate not in election"},
        429: {"description": "Rate limit exceeded"},
    }
)
@limiter.limit(settings.RATE_LIMIT)
async def cast_vote(
    request: Request,
    election_id: UUID,
    vote: CastVoteRequest,
    voter: VoterIdentity = Depends(current_voter),
    services: Services = Depends(get_services)
) -> BallotResponse:
    """
    Cast the caller's ballot.

    Retrying after a timeout is safe: a ballot that was already recorded
    answers 409 AlreadyVoted instead of producing a second one.
    """
    try:
        return await services.ledger.cast_vote(voter, str(election_id), str(vote.candidate_id))
    except BallotError:
        raise
    except Exception as e:
        raise internal_error(f"casting vote in election {election_id}", e)


@router.get("/elections/{election_id}/results", response_model=ElectionResultsResponse, responses=ERROR_RESPONSES)
async def get_results(
    election_id: UUID,
    voter: VoterIdentity = Depends(current_voter),
    services: Services = Depends(get_services)
) -> ElectionResultsResponse:
    """Per-candidate counts and percentages, sorted with leaders first."""
    try:
        await services.lifecycle.authorize_results(voter, str(election_id))
        return await services.tally.get_results(str(election_id))
    except BallotError:
        raise
    except Exception as e:
        raise internal_error(f"getting results for election {election_id}", e)


@router.get("/elections/{election_id}/turnout", response_model=TurnoutResponse, responses=ERROR_RESPONSES)
async def get_turnout(
    election_id: UUID,
    voter: VoterIdentity = Depends(current_voter),
    services: Services = Depends(get_services)
) -> TurnoutResponse:
    """Which eligible voters have voted. Host and admins only."""
    try:
        await services.lifecycle.authorize_turnout(voter, str(election_id))
        return await services.tally.get_turnout(str(election_id))
    except BallotError:
        raise
    except Exception as e:
        raise internal_error(f"getting turnout for election {election_id}", e)


@router.post(
    "/candidates/self-results",
    response_model=CandidateSelfResultsResponse,
    responses={404: {"model": ErrorResponse, "description": "Unknown lookup token"}}
)
async def get_candidate_self_results(
    body: CandidateSelfResultsRequest,
    services: Services = Depends(get_services)
) -> CandidateSelfResultsResponse:
    """A candidate's own tally. The lookup token is the only credential."""
    try:
        return await services.tally.get_candidate_self_results(body.lookup_token)
    except BallotError:
        raise
    except Exception as e:
        raise internal_error("getting candidate results", e)


@router.get(
    "/health",
    response_model=HealthResponse,
    responses={
        503: {"model": HealthResponse, "description": "Service unhealthy"}
    }
)
async def health_check(services: Services = Depends(get_services)) -> HealthResponse:
    """
    Check health of the service and its dependencies.

    PostgreSQL is required; Redis and RabbitMQ only degrade the service.
    """
    checks = {}

    try:
        postgres_healthy = await services.database.check_health()
        checks["postgresql"] = "connected" if postgres_healthy else "disconnected"
    except Exception as e:
        logger.error(f"PostgreSQL health check error: {e}")
        checks["postgresql"] = "error"

    if services.redis_client is not None:
        try:
            await services.redis_client.ping()
            checks["redis"] = "connected"
        except Exception as e:
            logger.error(f"Redis health check error: {e}")
            checks["redis"] = "disconnected"

    if services.publisher is not None:
        try:
            rabbitmq_healthy = await services.publisher.check_health()
            checks["rabbitmq"] = "connected" if rabbitmq_healthy else "disconnected"
        except Exception as e:
            logger.error(f"RabbitMQ health check error: {e}")
            checks["rabbitmq"] = "error"

    if checks["postgresql"] != "connected":
        overall_status = "unhealthy"
    elif all(value == "connected" for value in checks.values()):
        overall_status = "healthy"
    else:
        overall_status = "degraded"

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE if overall_status == "unhealthy" else status.HTTP_200_OK
    response = HealthResponse(
        status=overall_status,
        services=checks,
        timestamp=datetime.utcnow()
    )
    return JSONResponse(
        status_code=status_code,
        content=response.model_dump(mode="json")
    )


async def ballot_error_handler(request: Request, exc: BallotError) -> JSONResponse:
    """Render domain errors as ErrorResponse."""
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(error=exc.error, message=exc.message, details=exc.details).model_dump()
    )


def create_app(services: Optional[Services] = None) -> FastAPI:
    """
    Build the application.

    Args:
        services: Pre-built services. When omitted they are connected from
            settings on startup and closed on shutdown.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Lifespan context manager for startup and shutdown events."""
        logger.info(f"Starting {settings.SERVICE_NAME} service...")
        owned = app.state.services is None
        if owned:
            try:
                app.state.services = await connect_services()
            except Exception as e:
                logger.error(f"Failed to start {settings.SERVICE_NAME}: {e}")
                raise
        logger.info(f"{settings.SERVICE_NAME} started successfully")

        yield

        logger.info(f"Shutting down {settings.SERVICE_NAME} service...")
        if owned:
            await close_services(app.state.services)
            app.state.services = None
        logger.info(f"{settings.SERVICE_NAME} shut down successfully")

    app = FastAPI(
        title="Ballot API",
        description="One ballot per voter per election, with live tallies and turnout",
        version=settings.API_VERSION,
        lifespan=lifespan
    )
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=settings.CORS_ALLOW_CREDENTIALS,
        allow_methods=settings.CORS_ALLOW_METHODS,
        allow_headers=settings.CORS_ALLOW_HEADERS,
    )

    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_exception_handler(BallotError, ballot_error_handler)

    @app.middleware("http")
    async def prometheus_middleware(request: Request, call_next):
        """Middleware to track request duration."""
        start = time.perf_counter()
        response = await call_next(request)
        route = request.scope.get("route")
        request_duration.labels(
            method=request.method,
            endpoint=getattr(route, "path", request.url.path),
            status=response.status_code
        ).observe(time.perf_counter() - start)
        return response

    app.include_router(router)

    @app.get("/metrics")
    async def metrics():
        """Prometheus metrics endpoint."""
        return Response(
            content=generate_latest(),
            media_type=CONTENT_TYPE_LATEST
        )

    @app.get("/")
    async def root():
        """Root endpoint with API information."""
        prefix = f"/api/{settings.API_VERSION}"
        return {
            "service": settings.SERVICE_NAME,
            "version": settings.API_VERSION,
            "status": "running",
            "endpoints": {
                "elections": f"{prefix}/elections",
                "hosted_elections": f"{prefix}/elections/hosted",
                "cast_vote": f"{prefix}/elections/{{election_id}}/votes",
                "results": f"{prefix}/elections/{{election_id}}/results",
                "turnout": f"{prefix}/elections/{{election_id}}/turnout",
                "candidate_results": f"{prefix}/candidates/self-results",
                "health": f"{prefix}/health",
                "metrics": "/metrics"
            }
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "ballot_services.ballot_api.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        log_level="info"
    )
