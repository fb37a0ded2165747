"""Domain entities package."""
from .face import BoundingBox, FaceDetection, largest_face
from .session import SearchError, SessionSnapshot, SessionStats, SessionStatus
from .video import VideoCandidate, VideoMatch

__all__ = [
    "BoundingBox",
    "FaceDetection",
    "largest_face",
    "SearchError",
    "SessionSnapshot",
    "SessionStats",
    "SessionStatus",
    "VideoCandidate",
    "VideoMatch",
]
