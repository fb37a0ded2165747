"""Face recognition value objects."""
from typing import Generic, List, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field

from facesearch.core.exceptions import ErrorCode
from facesearch.domain.entities.face import FaceDetection

T = TypeVar("T")


class Failure(BaseModel):
    """Error kind and short message carried by a failed result."""
    code: ErrorCode
    message: str


class Result(BaseModel, Generic[T]):
    """Explicit outcome of a pipeline component call.

    Components at the pipeline boundary return these records instead of
    raising, so one bad site or thumbnail never unwinds the whole search.

    Example:
        ```python
        result = await detector.embed(image_bytes)
        if not result.ok:
            raise exception_for(result.error.code, result.error.message)
        embedding = result.value
        ```
    """
    value: Optional[T] = None
    error: Optional[Failure] = None

    model_config = ConfigDict(arbitrary_types_allowed=True)

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: T) -> "Result[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, code: ErrorCode, message: str) -> "Result[T]":
        return cls(error=Failure(code=code, message=message))


class DetectionResult(BaseModel):
    """Result of face detection operation."""
    faces: List[FaceDetection] = Field(..., description="Detected faces, confidence floor applied")
    image_width: int = Field(..., description="Width of the oriented source image")
    image_height: int = Field(..., description="Height of the oriented source image")
