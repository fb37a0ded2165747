"""Error kinds and exceptions for the face video search service."""
from enum import Enum
from typing import Optional


class ErrorCode(str, Enum):
    """Error kinds surfaced by the service.

    Input and resource kinds are returned to callers verbatim. Pipeline and
    partial kinds are recorded inside a session. INTERNAL_ERROR never carries
    detail outside the process.
    """
    # Input errors
    INVALID_INPUT = "INVALID_INPUT"
    FILE_TOO_LARGE = "FILE_TOO_LARGE"
    INVALID_FILE_TYPE = "INVALID_FILE_TYPE"
    INVALID_SESSION_ID = "INVALID_SESSION_ID"

    # Resource errors
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    SESSION_NOT_FOUND = "SESSION_NOT_FOUND"
    SESSION_EXPIRED = "SESSION_EXPIRED"
    SESSION_CLOSED = "SESSION_CLOSED"

    # Pipeline errors
    INVALID_IMAGE = "INVALID_IMAGE"
    NO_FACE_DETECTED = "NO_FACE_DETECTED"
    DETECTOR_UNAVAILABLE = "DETECTOR_UNAVAILABLE"
    DIM_MISMATCH = "DIM_MISMATCH"

    # Partial failures
    SITE_UNAVAILABLE = "SITE_UNAVAILABLE"
    SITE_TIMEOUT = "SITE_TIMEOUT"
    DOWNLOAD_FAILED = "DOWNLOAD_FAILED"
    DOWNLOAD_TIMEOUT = "DOWNLOAD_TIMEOUT"
    SSRF_BLOCKED = "SSRF_BLOCKED"

    INTERNAL_ERROR = "INTERNAL_ERROR"


class FaceSearchError(Exception):
    """Base exception for face search operations."""

    code: ErrorCode = ErrorCode.INTERNAL_ERROR
    status_code: int = 500
    public_message: str = "An internal error occurred"

    def __init__(self, message: Optional[str] = None, details: Optional[dict] = None):
        """
        Initialize face search error.

        Args:
            message: Error description, kept internal for INTERNAL_ERROR
            details: Additional error context
        """
        super().__init__(message or self.public_message)
        self.details = details or {}

    @property
    def message(self) -> str:
        """Message safe to return to the caller."""
        if self.code == ErrorCode.INTERNAL_ERROR:
            return self.public_message
        return str(self)


class InvalidInputError(FaceSearchError):
    """Raised when request input fails validation."""
    code = ErrorCode.INVALID_INPUT
    status_code = 400
    public_message = "Invalid input provided"


class FileTooLargeError(InvalidInputError):
    """Raised when an upload exceeds the size limit."""
    code = ErrorCode.FILE_TOO_LARGE
    status_code = 413
    public_message = "File size exceeds maximum allowed limit"


class InvalidFileTypeError(InvalidInputError):
    """Raised when an upload is not a supported image type."""
    code = ErrorCode.INVALID_FILE_TYPE
    status_code = 415
    public_message = "File type not supported"


class InvalidSessionIdError(InvalidInputError):
    """Raised when a search id does not match the id format."""
    code = ErrorCode.INVALID_SESSION_ID
    status_code = 400
    public_message = "Invalid search id"


class RateLimitExceededError(FaceSearchError):
    """Raised when a caller exceeds an endpoint's rate limit."""
    code = ErrorCode.RATE_LIMIT_EXCEEDED
    status_code = 429
    public_message = "Too many requests, please try again later"

    def __init__(self, retry_after: int = 0, details: Optional[dict] = None):
        super().__init__(self.public_message, details)
        self.retry_after = retry_after


class SessionNotFoundError(FaceSearchError):
    """Raised when a session id is unknown."""
    code = ErrorCode.SESSION_NOT_FOUND
    status_code = 404
    public_message = "Search session not found"


class SessionExpiredError(FaceSearchError):
    """Raised when a session outlived its TTL."""
    code = ErrorCode.SESSION_EXPIRED
    status_code = 410
    public_message = "Search session has expired"


class SessionClosedError(FaceSearchError):
    """Raised when results are appended to a terminal session."""
    code = ErrorCode.SESSION_CLOSED
    status_code = 409
    public_message = "Search session is no longer processing"


class InvalidImageError(FaceSearchError):
    """Raised when the provided image cannot be decoded."""
    code = ErrorCode.INVALID_IMAGE
    status_code = 400
    public_message = "Image could not be processed"


class NoFaceDetectedError(FaceSearchError):
    """Raised when no face is detected in the image."""
    code = ErrorCode.NO_FACE_DETECTED
    status_code = 422
    public_message = "No face detected in the uploaded image"


class DetectorUnavailableError(FaceSearchError):
    """Raised when the face detection model is not loaded."""
    code = ErrorCode.DETECTOR_UNAVAILABLE
    status_code = 503
    public_message = "Face detection is temporarily unavailable"


class DimensionMismatchError(FaceSearchError, ValueError):
    """Raised when two embeddings of different length are compared."""
    code = ErrorCode.DIM_MISMATCH
    status_code = 500
    public_message = "Embedding dimensions do not match"


class ServiceNotInitializedError(FaceSearchError):
    """Raised when services are used before the container is initialized."""
    status_code = 503


class SiteConfigurationError(FaceSearchError):
    """Raised when the site descriptor file is invalid."""
    code = ErrorCode.INTERNAL_ERROR


class BlockedUrlError(FaceSearchError):
    """Raised by the guarded HTTP client when a URL may not be fetched."""
    code = ErrorCode.SSRF_BLOCKED
    status_code = 400
    public_message = "URL is not allowed"


_EXCEPTIONS_BY_CODE = {
    exc.code: exc
    for exc in (
        InvalidInputError,
        FileTooLargeError,
        InvalidFileTypeError,
        InvalidSessionIdError,
        SessionNotFoundError,
        SessionExpiredError,
        SessionClosedError,
        InvalidImageError,
        NoFaceDetectedError,
        DetectorUnavailableError,
        DimensionMismatchError,
        BlockedUrlError,
    )
}


def exception_for(code: ErrorCode, message: Optional[str] = None) -> FaceSearchError:
    """Build the exception matching an error kind carried by a result record."""
    exc_type = _EXCEPTIONS_BY_CODE.get(code, FaceSearchError)
    return exc_type(message)
