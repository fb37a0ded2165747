"""Service interfaces package."""
from .recognition import FaceDetector

__all__ = ["FaceDetector"]
