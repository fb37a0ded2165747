"""FastAPI dependency providers."""
from typing import AsyncGenerator

from fastapi import Depends, Request

from facesearch.core.container import ServiceContainer, container
from facesearch.core.exceptions import ServiceNotInitializedError
from facesearch.services.audit import AuditLog
from facesearch.services.pipeline import PipelineOrchestrator
from facesearch.services.rate_limiter import RateLimiter


async def get_container(request: Request) -> ServiceContainer:
    """Dependency provider for the ServiceContainer bound to the app."""
    cont = getattr(request.app.state, "container", None) or container
    if not cont.is_initialized:
        raise ServiceNotInitializedError("Service container is not initialized")
    return cont


async def get_pipeline(
    cont: ServiceContainer = Depends(get_container),
) -> AsyncGenerator[PipelineOrchestrator, None]:
    """Provide the search pipeline.

    Yields:
        PipelineOrchestrator: Initialized pipeline
    """
    yield cont.pipeline


async def get_rate_limiter(
    cont: ServiceContainer = Depends(get_container),
) -> AsyncGenerator[RateLimiter, None]:
    """Provide the rate limiter.

    Yields:
        RateLimiter: Initialized rate limiter
    """
    yield cont.rate_limiter


async def get_audit_log(
    cont: ServiceContainer = Depends(get_container),
) -> AsyncGenerator[AuditLog, None]:
    """Provide the audit log.

    Yields:
        AuditLog: Initialized audit log
    """
    yield cont.audit_log
