"""
InsightFace-based implementation of the face detector.

This module wraps the InsightFace ``FaceAnalysis`` pipeline behind the
``FaceDetector`` interface. It handles image validation, orientation and
downscaling, confidence filtering and embedding hygiene, and maps bounding
boxes back to pixels of the oriented source image.

Key Features:
    - One-shot model initialization shared by concurrent callers
    - Inference offloaded to a worker thread
    - Largest-face selection for the user photo
    - Results returned as ``Result`` records instead of raised errors

Example:
    ```python
    detector = InsightFaceDetector()

    with open("photo.jpg", "rb") as f:
        result = await detector.embed(f.read())
    if result.ok:
        embedding = result.value
    ```

Note:
    This implementation uses CPU inference. For GPU support, pass a loader
    that builds ``FaceAnalysis`` with 'CUDAExecutionProvider'.
"""
import asyncio
from typing import Any, Callable, List, Optional, Tuple

import numpy as np

from facesearch.core.config import settings
from facesearch.core.exceptions import DetectorUnavailableError, ErrorCode
from facesearch.core.logging import get_logger
from facesearch.core.utils.image import bytes_to_numpy_array, clamp_dimensions, sniff_image_type
from facesearch.core.utils.security import secure_erase
from facesearch.domain.entities.face import BoundingBox, FaceDetection, largest_face
from facesearch.domain.interfaces.recognition.face_detector import FaceDetector
from facesearch.domain.value_objects.recognition import DetectionResult, Result

logger = get_logger(__name__)


def load_face_analysis() -> Any:
    """Build and prepare the InsightFace model configured in settings."""
    from insightface.app import FaceAnalysis

    model = FaceAnalysis(
        name=settings.MODEL_NAME,
        root=settings.MODEL_CACHE_DIR,
        allowed_modules=["detection", "recognition"],
        providers=["CPUExecutionProvider"],
    )
    # Detection size affects accuracy significantly
    model.prepare(ctx_id=0, det_size=(640, 640))
    return model


class InsightFaceDetector(FaceDetector):
    """
    InsightFace-based face detector.

    The model is loaded on first use. The first caller starts the load in a
    worker thread and every concurrent caller awaits the same task. A loaded
    model is kept for the life of the process; a failed load is reported as
    DETECTOR_UNAVAILABLE to everyone waiting and retried by the next call.

    Attributes:
        min_confidence: Detections below this score are discarded
        max_dimension: Cap for the larger image side before inference
    """

    def __init__(
        self,
        model_loader: Optional[Callable[[], Any]] = None,
        min_confidence: Optional[float] = None,
        max_dimension: Optional[int] = None,
        embedding_dim: Optional[int] = None,
    ) -> None:
        self._model_loader = model_loader or load_face_analysis
        self.min_confidence = settings.MIN_FACE_CONFIDENCE if min_confidence is None else min_confidence
        self.max_dimension = max_dimension or settings.MAX_IMAGE_DIMENSION
        self._embedding_dim = embedding_dim or settings.EMBEDDING_DIM
        self._model: Any = None
        self._init_task: Optional[asyncio.Task] = None

    @property
    def embedding_dim(self) -> int:
        return self._embedding_dim

    @property
    def is_ready(self) -> bool:
        return self._model is not None

    async def __aenter__(self) -> "InsightFaceDetector":
        """Enter async context with the model loaded."""
        await self.initialize()
        return self

    async def __aexit__(self, exc_type: Optional[type], exc_val: Optional[Exception],
                        exc_tb: Optional[Any]) -> None:
        """Exit async context, releasing the model."""
        if exc_type:
            logger.error(
                "Error occurred during detector context exit",
                error=str(exc_val),
                exc_info=True
            )
        await self.close()

    async def close(self) -> None:
        """Release the model handle."""
        logger.debug("Releasing InsightFace model")
        self._model = None
        self._init_task = None

    async def initialize(self) -> None:
        if self._model is not None:
            return
        if self._init_task is None:
            self._init_task = asyncio.create_task(self._load())
        await asyncio.shield(self._init_task)

    async def _load(self) -> None:
        logger.info("Loading face detection model", model=settings.MODEL_NAME)
        try:
            model = await asyncio.to_thread(self._model_loader)
        except Exception as e:
            self._init_task = None
            logger.error("Face detection model failed to load", error=str(e), exc_info=True)
            raise DetectorUnavailableError() from e
        self._model = model
        logger.info("Face detection model ready", model=settings.MODEL_NAME)

    def _convert_to_face(self, face_data: Any, scale: float, width: int, height: int) -> Optional[FaceDetection]:
        """
        Convert an InsightFace detection into a domain FaceDetection.

        Boxes are divided by the downscale factor and clipped to the source
        image. Faces with a wrong-length or non-finite embedding are dropped.

        Returns:
            The detection, or None when the face fails the hygiene checks
        """
        embedding = getattr(face_data, "embedding", None)
        if embedding is None:
            return None
        embedding = np.asarray(embedding, dtype=np.float64).reshape(-1)
        if embedding.size != self._embedding_dim or not np.all(np.isfinite(embedding)):
            logger.warning(
                "Dropping face with invalid embedding",
                embedding_size=int(embedding.size),
                expected_size=self._embedding_dim,
            )
            return None

        x1, y1, x2, y2 = (float(v) / scale for v in face_data.bbox[:4])
        x1, x2 = max(0.0, x1), min(float(width), x2)
        y1, y2 = max(0.0, y1), min(float(height), y2)
        confidence = min(1.0, max(0.0, float(face_data.det_score)))

        return FaceDetection(
            bounding_box=BoundingBox(
                x=round(x1, 2),
                y=round(y1, 2),
                width=round(max(0.0, x2 - x1), 2),
                height=round(max(0.0, y2 - y1), 2),
            ),
            embedding=embedding,
            confidence=confidence,
        )

    def _run_inference(self, image_bytes: bytes) -> Tuple[List[FaceDetection], int, int]:
        """Decode, downscale and run the model. Runs in a worker thread."""
        image = bytes_to_numpy_array(image_bytes)
        height, width = image.shape[:2]
        resized, scale = clamp_dimensions(image, self.max_dimension)
        try:
            raw_faces = self._model.get(resized) or []
        finally:
            secure_erase(resized)
            secure_erase(image)

        faces = []
        for face_data in raw_faces:
            if float(face_data.det_score) < self.min_confidence:
                continue
            face = self._convert_to_face(face_data, scale, width, height)
            if face is not None:
                faces.append(face)

        logger.debug(
            "Face detection results",
            faces_found=len(raw_faces),
            faces_kept=len(faces),
            image_size=(width, height),
            scale=scale,
        )
        return faces, width, height

    async def detect(self, image_bytes: bytes) -> Result[DetectionResult]:
        if not image_bytes or len(image_bytes) > settings.MAX_FILE_SIZE:
            return Result.failure(ErrorCode.INVALID_IMAGE, "Image size is out of bounds")
        if sniff_image_type(image_bytes) is None:
            return Result.failure(ErrorCode.INVALID_IMAGE, "Unsupported image format")

        try:
            await self.initialize()
        except DetectorUnavailableError as e:
            return Result.failure(ErrorCode.DETECTOR_UNAVAILABLE, e.message)

        try:
            faces, width, height = await asyncio.to_thread(self._run_inference, image_bytes)
        except ValueError as e:
            logger.info("Image could not be decoded", error=str(e))
            return Result.failure(ErrorCode.INVALID_IMAGE, "Image could not be decoded")
        except Exception as e:
            logger.error("Face detection failed", error=str(e), exc_info=True)
            return Result.failure(ErrorCode.DETECTOR_UNAVAILABLE, "Face detection failed")

        return Result.success(
            DetectionResult(faces=faces, image_width=width, image_height=height)
        )

    async def embed(self, image_bytes: bytes) -> Result[np.ndarray]:
        result = await self.detect(image_bytes)
        if not result.ok:
            return Result.failure(result.error.code, result.error.message)

        faces = result.value.faces
        face = largest_face(faces)
        embedding = face.embedding.copy() if face is not None else None
        # Only the copy of the chosen face leaves this method
        for detected in faces:
            secure_erase(detected.embedding)
        if embedding is None:
            return Result.failure(ErrorCode.NO_FACE_DETECTED, "No face detected in image")
        return Result.success(embedding)
