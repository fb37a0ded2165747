"""Main application module for the face video search service."""
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncGenerator, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from facesearch.api import router as api_v1_router
from facesearch.api.models.search import ErrorDetail, ErrorResponse, HealthResponse
from facesearch.core.config import settings
from facesearch.core.container import ServiceContainer, container as default_container
from facesearch.core.exceptions import ErrorCode, FaceSearchError, RateLimitExceededError
from facesearch.core.logging import get_logger, setup_logging
from facesearch.services.audit import SecurityEventType, Severity

setup_logging()
logger = get_logger(__name__)

GENERIC_ERROR_MESSAGE = "An internal error occurred"


def error_response(status_code: int, code: str, message: str, headers: Optional[dict] = None) -> JSONResponse:
    body = ErrorResponse(error=ErrorDetail(code=code, message=message))
    return JSONResponse(status_code=status_code, content=body.model_dump(by_alias=True), headers=headers)


def security_headers() -> dict:
    """Headers added to every response."""
    connect_src = " ".join(["'self'", *settings.cors_origins])
    return {
        "Strict-Transport-Security": "max-age=31536000; includeSubDomains",
        "X-Content-Type-Options": "nosniff",
        "X-Frame-Options": "DENY",
        "Referrer-Policy": "strict-origin-when-cross-origin",
        "Content-Security-Policy": f"default-src 'none'; connect-src {connect_src}; frame-ancestors 'none'",
    }


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[Any, None]:
    """Handle application startup and shutdown events.

    Args:
        app: FastAPI application instance

    Returns:
        AsyncGenerator[Any, None]: Async context manager for app lifecycle
    """
    logger.info(
        "Starting up face video search service",
        version=settings.VERSION,
        environment=settings.ENVIRONMENT,
    )

    await app.state.container.initialize()
    logger.info("Initialized application services")

    yield

    logger.info("Shutting down face video search service")
    await app.state.container.cleanup()
    logger.info("Cleaned up application resources")


def create_app(container: Optional[ServiceContainer] = None) -> FastAPI:
    """Build the FastAPI application around a service container."""
    app = FastAPI(
        title=settings.PROJECT_NAME,
        version=settings.VERSION,
        openapi_url=f"{settings.API_V1_STR}/openapi.json",
        docs_url="/docs" if settings.ENVIRONMENT == "development" else None,
        lifespan=lifespan,
    )
    app.state.container = container or default_container

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        response = await call_next(request)
        response.headers.update(security_headers())
        return response

    @app.exception_handler(FaceSearchError)
    async def face_search_error_handler(request: Request, exc: FaceSearchError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error(
                "Request failed",
                path=request.url.path,
                code=exc.code.value,
                error=str(exc),
                details=exc.details,
            )
        headers = None
        if isinstance(exc, RateLimitExceededError):
            headers = {"Retry-After": str(exc.retry_after)}
        return error_response(exc.status_code, exc.code.value, exc.message, headers)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        audit_log = getattr(app.state.container, "audit_log", None)
        if audit_log is not None:
            audit_log.record_security_event(
                SecurityEventType.INVALID_INPUT,
                Severity.LOW,
                principal=request.client.host if request.client else None,
                details={"path": request.url.path, "errors": len(exc.errors())},
            )
        return error_response(400, ErrorCode.INVALID_INPUT.value, "Invalid input provided")

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error("Unhandled error", path=request.url.path, error=str(exc), exc_info=exc)
        return error_response(500, ErrorCode.INTERNAL_ERROR.value, GENERIC_ERROR_MESSAGE)

    app.include_router(api_v1_router, prefix=settings.API_V1_STR)

    @app.get("/health", response_model=HealthResponse)
    async def health_check() -> HealthResponse:
        """Basic health check endpoint.

        Returns:
            HealthResponse: Health status and server time
        """
        logger.debug("Health check requested")
        return HealthResponse(status="healthy", timestamp=datetime.now(timezone.utc))

    return app


app = create_app()


def run() -> None:
    """Serve the application with uvicorn on the configured host and port."""
    import uvicorn

    uvicorn.run(
        "facesearch.main:app",
        host=settings.HOST,
        port=settings.PORT,
        log_level=settings.LOG_LEVEL.lower(),
    )


if __name__ == "__main__":
    run()
