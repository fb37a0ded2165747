"""Face recognition services."""
from .insight_face import InsightFaceDetector

__all__ = ["InsightFaceDetector"]
