"""
Image processing utility functions.
"""
import io
from typing import Optional, Tuple

import cv2
import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

JPEG_MIME = "image/jpeg"
PNG_MIME = "image/png"
WEBP_MIME = "image/webp"

MAX_IMAGE_PIXELS = 40_000_000


def sniff_image_type(data: bytes) -> Optional[str]:
    """Identify an image by its magic number.

    Args:
        data: Raw file bytes

    Returns:
        The MIME type for JPEG, PNG or WebP content, None for anything else
    """
    if len(data) >= 2 and data[0] == 0xFF and data[1] == 0xD8:
        return JPEG_MIME
    if data[:4] == b"\x89PNG":
        return PNG_MIME
    if len(data) >= 12 and data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return WEBP_MIME
    return None


def bytes_to_numpy_array(image_bytes: bytes, flags: int = cv2.IMREAD_COLOR) -> np.ndarray:
    """Convert image bytes to a numpy array.

    OpenCV applies the EXIF orientation tag when decoding in color mode, so the
    returned array is upright.

    Args:
        image_bytes: Raw image bytes
        flags: OpenCV imread flags (default: COLOR)

    Returns:
        numpy.ndarray: Image as a BGR numpy array

    Raises:
        ValueError: If the image cannot be decoded
    """
    np_array = np.frombuffer(image_bytes, np.uint8)
    img = cv2.imdecode(np_array, flags)

    if img is None:
        raise ValueError("Failed to decode image bytes")

    return img


def clamp_dimensions(image: np.ndarray, max_dimension: int) -> Tuple[np.ndarray, float]:
    """Shrink an image so its larger side is at most ``max_dimension``.

    Args:
        image: Image array
        max_dimension: Cap for the larger side in pixels

    Returns:
        The (possibly resized) image and the scale applied to it
    """
    height, width = image.shape[:2]
    largest = max(height, width)
    if largest <= max_dimension:
        return image, 1.0

    scale = max_dimension / float(largest)
    new_size = (max(1, int(round(width * scale))), max(1, int(round(height * scale))))
    resized = cv2.resize(image, new_size, interpolation=cv2.INTER_AREA)
    return resized, scale


class ImageTooLargeError(ValueError):
    """Raised when an image decodes to more pixels than allowed."""


def strip_metadata(image_bytes: bytes, max_pixels: int = MAX_IMAGE_PIXELS, quality: int = 90) -> bytes:
    """Verify an image with Pillow and re-encode it without metadata.

    The EXIF orientation is applied to the pixels first, then the pixels are
    copied into a fresh image so EXIF, ICC, XMP and comment blocks are not
    carried over. Output is always JPEG.

    The pixel count is read from the header and checked before anything is
    decoded.

    Args:
        image_bytes: Raw image bytes
        max_pixels: Largest width times height accepted
        quality: JPEG quality for the re-encoded image

    Returns:
        bytes: Clean JPEG bytes

    Raises:
        ImageTooLargeError: If the image has more than ``max_pixels`` pixels
        ValueError: If Pillow cannot verify or decode the image
    """
    try:
        with Image.open(io.BytesIO(image_bytes)) as header:
            width, height = header.size
            if width * height > max_pixels:
                raise ImageTooLargeError(f"Image has {width * height} pixels, limit is {max_pixels}")
            header.verify()
        with Image.open(io.BytesIO(image_bytes)) as img:
            img.load()
            clean = ImageOps.exif_transpose(img).convert("RGB")
            clean.info = {}
    except Image.DecompressionBombError as e:
        raise ImageTooLargeError(str(e))
    except (UnidentifiedImageError, OSError, SyntaxError) as e:
        raise ValueError(f"Image verification failed: {e}")

    buffer = io.BytesIO()
    clean.save(buffer, format="JPEG", quality=quality)
    return buffer.getvalue()
