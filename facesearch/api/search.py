"""Face search API endpoints."""
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request

from facesearch.api.models.search import (
    ConfigureSearchRequest,
    ConfigureSearchResponse,
    DeleteSessionResponse,
    ErrorResponse,
    GetResultsResponse,
    ProcessImageResponse,
    SessionOut,
    SessionResponse,
    VideoResult,
)
from facesearch.core.config import settings
from facesearch.core.exceptions import FileTooLargeError, NoFaceDetectedError, RateLimitExceededError
from facesearch.core.logging import get_logger
from facesearch.infrastructure.dependencies import get_pipeline, get_rate_limiter
from facesearch.services.pipeline import PipelineOrchestrator
from facesearch.services.rate_limiter import (
    FACE_DETECT,
    SIMILARITY,
    VIDEO_SEARCH,
    RateLimiter,
    resolve_principal,
)

logger = get_logger(__name__)
router = APIRouter(
    tags=["search"],
    responses={
        400: {"model": ErrorResponse, "description": "Invalid request"},
        429: {"model": ErrorResponse, "description": "Rate limit exceeded"},
        500: {"model": ErrorResponse, "description": "Internal server error"},
    },
)


def client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def enforce_rate_limit(limiter: RateLimiter, key: str, principal: str) -> None:
    """Count a request against ``key`` and raise when it is denied.

    Raises:
        RateLimitExceededError: If the principal has used up the window
    """
    decision = limiter.check(key, principal)
    if not decision.allowed:
        raise RateLimitExceededError(
            retry_after=decision.retry_after(limiter.now()),
            details={"endpoint": key, "reset_at": decision.reset_at},
        )


@router.post(
    "/process-image",
    response_model=ProcessImageResponse,
    summary="Start a face search",
    description=(
        "Accepts a JPEG, PNG or WebP photo as the raw request body, extracts the "
        "largest face and starts searching the configured sites. Poll the results "
        "endpoint with the returned searchId."
    ),
    responses={
        200: {
            "description": "Search started, or no face found",
            "content": {
                "application/json": {
                    "example": {"success": True, "searchId": "Zk3v...", "faceDetected": True}
                }
            },
        },
        413: {"model": ErrorResponse, "description": "File too large"},
        415: {"model": ErrorResponse, "description": "Unsupported file type"},
        503: {"model": ErrorResponse, "description": "Face detection unavailable"},
    },
)
async def process_image(
    request: Request,
    pipeline: PipelineOrchestrator = Depends(get_pipeline),
    limiter: RateLimiter = Depends(get_rate_limiter),
) -> ProcessImageResponse:
    """Validate an uploaded photo and start a search for its face."""
    principal = resolve_principal(None, client_ip(request))
    enforce_rate_limit(limiter, FACE_DETECT, principal)
    enforce_rate_limit(limiter, VIDEO_SEARCH, principal)

    declared = request.headers.get("content-length")
    if declared and declared.isdigit() and int(declared) > settings.MAX_FILE_SIZE:
        raise FileTooLargeError()
    image_bytes = await request.body()

    try:
        search_id = await pipeline.start_search(
            image_bytes,
            principal=principal,
            user_agent=request.headers.get("user-agent"),
        )
    except NoFaceDetectedError:
        logger.info("No face detected in upload")
        return ProcessImageResponse(success=False, search_id="", face_detected=False)

    return ProcessImageResponse(success=True, search_id=search_id, face_detected=True)


@router.get(
    "/{search_id}/results",
    response_model=GetResultsResponse,
    summary="Get search results",
    description="Returns status, progress and the matches that meet the session threshold.",
    responses={
        404: {"model": ErrorResponse, "description": "Search not found"},
        410: {"model": ErrorResponse, "description": "Search expired"},
    },
)
async def get_results(
    search_id: str,
    request: Request,
    threshold: Optional[float] = Query(None, description="Apply this threshold before answering"),
    pipeline: PipelineOrchestrator = Depends(get_pipeline),
    limiter: RateLimiter = Depends(get_rate_limiter),
) -> GetResultsResponse:
    """Poll a search."""
    principal = resolve_principal(search_id, client_ip(request))
    enforce_rate_limit(limiter, SIMILARITY, principal)

    results = await pipeline.get_results(
        search_id,
        threshold=threshold,
        principal=principal,
        user_agent=request.headers.get("user-agent"),
    )
    return GetResultsResponse.from_search_results(results)


@router.get(
    "/{search_id}",
    response_model=SessionResponse,
    summary="Get search session",
    description="Returns status, threshold, timestamps and the number of matches meeting the threshold.",
    responses={
        404: {"model": ErrorResponse, "description": "Search not found"},
        410: {"model": ErrorResponse, "description": "Search expired"},
    },
)
async def get_session(
    search_id: str,
    request: Request,
    pipeline: PipelineOrchestrator = Depends(get_pipeline),
    limiter: RateLimiter = Depends(get_rate_limiter),
) -> SessionResponse:
    """Describe a search session."""
    principal = resolve_principal(search_id, client_ip(request))
    enforce_rate_limit(limiter, SIMILARITY, principal)

    info = await pipeline.get_session(
        search_id,
        principal=principal,
        user_agent=request.headers.get("user-agent"),
    )
    return SessionResponse(success=True, session=SessionOut.from_info(info))


@router.post(
    "/{search_id}/configure",
    response_model=ConfigureSearchResponse,
    summary="Change the similarity threshold",
    description="Refilters the stored matches without repeating discovery or detection.",
    responses={
        404: {"model": ErrorResponse, "description": "Search not found"},
        410: {"model": ErrorResponse, "description": "Search expired"},
    },
)
async def configure_search(
    search_id: str,
    body: ConfigureSearchRequest,
    request: Request,
    pipeline: PipelineOrchestrator = Depends(get_pipeline),
    limiter: RateLimiter = Depends(get_rate_limiter),
) -> ConfigureSearchResponse:
    """Re-threshold a search."""
    principal = resolve_principal(search_id, client_ip(request))
    enforce_rate_limit(limiter, SIMILARITY, principal)

    results = await pipeline.configure_search(
        search_id,
        body.threshold,
        principal=principal,
        user_agent=request.headers.get("user-agent"),
    )
    return ConfigureSearchResponse(
        success=True,
        updated_results=[VideoResult.from_match(match) for match in results.results],
    )


@router.delete(
    "/{search_id}",
    response_model=DeleteSessionResponse,
    summary="Delete a search",
    description="Erases the session and its biometric data. Never rate limited.",
)
async def delete_session(
    search_id: str,
    request: Request,
    pipeline: PipelineOrchestrator = Depends(get_pipeline),
) -> DeleteSessionResponse:
    """Erase a search session."""
    await pipeline.delete_session(
        search_id,
        principal=resolve_principal(search_id, client_ip(request)),
        user_agent=request.headers.get("user-agent"),
    )
    return DeleteSessionResponse(success=True)
