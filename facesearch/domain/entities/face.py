"""Core face domain entities."""
from typing import Union

import numpy as np
from pydantic import BaseModel, ConfigDict, Field, field_validator


class BoundingBox(BaseModel):
    """Face bounding box in pixels of the oriented source image."""
    x: float = Field(..., description="Left edge in pixels")
    y: float = Field(..., description="Top edge in pixels")
    width: float = Field(..., ge=0, description="Width in pixels")
    height: float = Field(..., ge=0, description="Height in pixels")

    @property
    def area(self) -> float:
        return self.width * self.height


class FaceDetection(BaseModel):
    """One face found inside one image."""
    bounding_box: BoundingBox = Field(..., description="Bounding box in source pixels")
    embedding: np.ndarray = Field(..., description="Face embedding vector")
    confidence: float = Field(..., ge=0.0, le=1.0, description="Detector confidence")

    model_config = ConfigDict(arbitrary_types_allowed=True)

    @field_validator("embedding", mode="before")
    @classmethod
    def validate_embedding(cls, v: Union[np.ndarray, list]) -> np.ndarray:
        """Convert to a flat float64 array and reject non-finite values."""
        array = np.asarray(v, dtype=np.float64).reshape(-1)
        if array.size == 0:
            raise ValueError("embedding must not be empty")
        if not np.all(np.isfinite(array)):
            raise ValueError("embedding contains non-finite values")
        return array


def largest_face(faces):
    """Pick the face with the greatest box area.

    Ties go to the higher confidence, then to the smaller ``(x, y)``.
    Returns None for an empty sequence.
    """
    if not faces:
        return None
    return min(
        faces,
        key=lambda f: (
            -f.bounding_box.area,
            -f.confidence,
            f.bounding_box.x,
            f.bounding_box.y,
        ),
    )
