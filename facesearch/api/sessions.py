"""Session housekeeping endpoints."""
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Request

from facesearch.api.models.search import (
    CleanupSessionsResponse,
    ErrorResponse,
    SessionStatsOut,
    SessionStatsResponse,
)
from facesearch.api.search import client_ip, enforce_rate_limit
from facesearch.infrastructure.dependencies import get_pipeline, get_rate_limiter
from facesearch.services.pipeline import PipelineOrchestrator
from facesearch.services.rate_limiter import SIMILARITY, RateLimiter, resolve_principal

router = APIRouter(
    tags=["sessions"],
    responses={
        429: {"model": ErrorResponse, "description": "Rate limit exceeded"},
        500: {"model": ErrorResponse, "description": "Internal server error"},
    },
)


@router.get(
    "/stats",
    response_model=SessionStatsResponse,
    summary="Session statistics",
    description="Counts live sessions by status. Matches and embeddings are never included.",
)
async def session_stats(
    request: Request,
    pipeline: PipelineOrchestrator = Depends(get_pipeline),
    limiter: RateLimiter = Depends(get_rate_limiter),
) -> SessionStatsResponse:
    enforce_rate_limit(limiter, SIMILARITY, resolve_principal(None, client_ip(request)))

    stats = await pipeline.session_stats()
    return SessionStatsResponse(
        success=True,
        stats=SessionStatsOut.from_stats(stats),
        timestamp=datetime.now(timezone.utc),
    )


@router.post(
    "/cleanup",
    response_model=CleanupSessionsResponse,
    summary="Expire overdue sessions",
    description="Runs the expiry sweep immediately and reports how many sessions it removed.",
)
async def cleanup_sessions(
    request: Request,
    pipeline: PipelineOrchestrator = Depends(get_pipeline),
    limiter: RateLimiter = Depends(get_rate_limiter),
) -> CleanupSessionsResponse:
    enforce_rate_limit(limiter, SIMILARITY, resolve_principal(None, client_ip(request)))

    report = await pipeline.cleanup_sessions()
    return CleanupSessionsResponse.from_report(report, timestamp=datetime.now(timezone.utc))
