"""Logging configuration for the face video search service.

Every log line goes through structlog. Biometric fields are redacted before
rendering, and a search worker binds its session id so that lines from its
site and thumbnail tasks can be grouped.
"""
import logging
import sys
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List

import structlog
from structlog.stdlib import ProcessorFormatter

from facesearch.core.config import settings

REDACTED = "[redacted]"

# Event keys that may hold biometric data or raw uploads
SENSITIVE_KEYS = frozenset({"embedding", "embeddings", "user_embedding", "image_bytes", "ciphertext"})

# Third-party loggers and the level they are held at
LIBRARY_LOG_LEVELS: Dict[str, int] = {
    "httpx": logging.WARNING,
    "httpcore": logging.WARNING,
    "insightface": logging.WARNING,
    "onnxruntime": logging.WARNING,
    "PIL": logging.INFO,
}


def redact_sensitive_fields(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Replace the values of biometric and raw-image keys."""
    for key in SENSITIVE_KEYS.intersection(event_dict):
        event_dict[key] = REDACTED
    return event_dict


def setup_logging() -> None:
    """Configure structured logging for the application.

    - Uses ConsoleRenderer with colors for development.
    - Uses JSONRenderer for other environments (test, staging, production).
    - Integrates with standard Python logging handlers.
    """
    shared_processors: List[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,  # session_id bound by search workers
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        redact_sensitive_fields,
        structlog.stdlib.ProcessorFormatter.wrap_for_formatter,  # must stay last
    ]

    if settings.ENVIRONMENT == "development":
        final_processor = structlog.dev.ConsoleRenderer(colors=True)
    else:
        final_processor = structlog.processors.JSONRenderer()
        # Tracebacks become a string field before the JSON step
        shared_processors.insert(-1, structlog.processors.format_exc_info)

    structlog.configure(
        processors=shared_processors,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(ProcessorFormatter(processor=final_processor))

    # Replace whatever handlers uvicorn or a test runner installed
    root_logger = logging.getLogger()
    if root_logger.hasHandlers():
        root_logger.handlers.clear()

    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))

    logging.getLogger("uvicorn.error").propagate = False
    logging.getLogger("uvicorn.access").disabled = True  # request logs carry search ids in paths
    for name, level in LIBRARY_LOG_LEVELS.items():
        logging.getLogger(name).setLevel(level)

    root_logger.info(
        f"Logging setup complete. Environment: {settings.ENVIRONMENT}, Level: {settings.LOG_LEVEL}"
    )


@contextmanager
def bind_context(**values: Any) -> Iterator[None]:
    """Attach key/value pairs to every log line emitted inside the block.

    Tasks created inside the block inherit the values.
    """
    with structlog.contextvars.bound_contextvars(**values):
        yield


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a logger instance compatible with standard logging.

    Args:
        name: Name for the logger, typically __name__

    Returns:
        structlog.stdlib.BoundLogger: Configured logger instance
    """
    return structlog.get_logger(name)
