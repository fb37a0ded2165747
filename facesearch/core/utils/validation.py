"""Input validation helpers shared by the pipeline and the HTTP surface."""
import math
import re
from typing import Iterable, Optional

from facesearch.core.exceptions import (
    FileTooLargeError,
    InvalidFileTypeError,
    InvalidInputError,
    InvalidSessionIdError,
)
from facesearch.core.utils.image import sniff_image_type

SEARCH_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{8,64}$")

MIN_THRESHOLD = 0.1
MAX_THRESHOLD = 1.0


def validate_search_id(search_id: Optional[str]) -> str:
    """Check a search id against the opaque id format.

    Raises:
        InvalidSessionIdError: If the id is missing or malformed
    """
    if not isinstance(search_id, str) or not SEARCH_ID_PATTERN.match(search_id):
        raise InvalidSessionIdError()
    return search_id


def validate_threshold(threshold: object) -> float:
    """Check a caller supplied similarity threshold.

    Raises:
        InvalidInputError: If the value is not a finite number in [0.1, 1.0]
    """
    if isinstance(threshold, bool) or not isinstance(threshold, (int, float)):
        raise InvalidInputError("Threshold must be a number")
    value = float(threshold)
    if not math.isfinite(value) or value < MIN_THRESHOLD or value > MAX_THRESHOLD:
        raise InvalidInputError(
            f"Threshold must be between {MIN_THRESHOLD} and {MAX_THRESHOLD}"
        )
    return value


def validate_image_upload(
    data: bytes,
    min_size: int,
    max_size: int,
    allowed_mimes: Iterable[str],
) -> str:
    """Validate size limits and magic number of an uploaded image.

    Args:
        data: Uploaded bytes
        min_size: Smallest accepted upload in bytes
        max_size: Largest accepted upload in bytes
        allowed_mimes: MIME types accepted for uploads

    Returns:
        The detected MIME type

    Raises:
        FileTooLargeError: If the upload is above ``max_size``
        InvalidInputError: If the upload is empty or below ``min_size``
        InvalidFileTypeError: If the magic number is not an accepted image type
    """
    if not data:
        raise InvalidInputError("Image data is empty")
    if len(data) > max_size:
        raise FileTooLargeError()
    if len(data) < min_size:
        raise InvalidInputError("Image data is too small")

    mime = sniff_image_type(data)
    if mime is None or mime not in set(allowed_mimes):
        raise InvalidFileTypeError()
    return mime
