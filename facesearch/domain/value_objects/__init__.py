"""Value objects package."""
from .recognition import DetectionResult, Failure, Result

__all__ = ["DetectionResult", "Failure", "Result"]
