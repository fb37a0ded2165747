"""Face detector interface."""
from abc import ABC, abstractmethod

import numpy as np

from ...value_objects.recognition import DetectionResult, Result


class FaceDetector(ABC):
    """Interface for face detection and embedding extraction."""

    @abstractmethod
    async def initialize(self) -> None:
        """
        Load the underlying model.

        Concurrent callers share one load. A failed load is not memoized.

        Raises:
            DetectorUnavailableError: If the model could not be loaded
        """
        pass

    @abstractmethod
    async def detect(self, image_bytes: bytes) -> Result[DetectionResult]:
        """
        Detect faces in the provided image.

        Args:
            image_bytes: Raw JPEG, PNG or WebP data

        Returns:
            A successful result with every face at or above the confidence
            floor (possibly none), or a failure with INVALID_IMAGE or
            DETECTOR_UNAVAILABLE
        """
        pass

    @abstractmethod
    async def embed(self, image_bytes: bytes) -> Result[np.ndarray]:
        """
        Return the embedding of the largest face in the image.

        Returns:
            A successful result with the embedding, or a failure with
            INVALID_IMAGE, NO_FACE_DETECTED or DETECTOR_UNAVAILABLE
        """
        pass

    @property
    @abstractmethod
    def embedding_dim(self) -> int:
        """Length of the embeddings this detector produces."""
        pass
