"""Tests for the InsightFace detector with a stand-in model."""
import asyncio
import io
import threading
from types import SimpleNamespace

import numpy as np
import pytest
from PIL import Image

from facesearch.core.exceptions import ErrorCode
from facesearch.services.recognition.insight_face import InsightFaceDetector

DIM = 16


def jpeg(width: int, height: int) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", (width, height), (90, 90, 90)).save(buffer, format="JPEG")
    return buffer.getvalue()


def raw_face(bbox, score=0.9, embedding=None, seed=0):
    if embedding is None:
        embedding = np.random.default_rng(seed).normal(size=DIM).astype(np.float32)
    return SimpleNamespace(bbox=np.array(bbox, dtype=np.float32), det_score=score, embedding=embedding)


class StubModel:
    """Returns canned faces and remembers the shapes it was given."""

    def __init__(self, faces):
        self.faces = faces
        self.shapes = []

    def get(self, image):
        self.shapes.append(image.shape)
        return list(self.faces)


class CountingLoader:
    def __init__(self, model, failures: int = 0):
        self.model = model
        self.failures = failures
        self.calls = 0
        self._lock = threading.Lock()

    def __call__(self):
        with self._lock:
            self.calls += 1
            if self.calls <= self.failures:
                raise RuntimeError("model files missing")
        return self.model


def make_detector(faces, failures: int = 0, **kwargs):
    model = StubModel(faces)
    loader = CountingLoader(model, failures)
    detector = InsightFaceDetector(model_loader=loader, embedding_dim=DIM, **kwargs)
    return detector, model, loader


class TestInsightFaceDetect:
    """Detection through the stand-in model."""

    async def test_detects_faces(self):
        detector, _, _ = make_detector([raw_face([10, 20, 60, 90], score=0.97)])

        result = await detector.detect(jpeg(200, 150))

        assert result.ok
        assert result.value.image_width == 200
        assert result.value.image_height == 150
        face = result.value.faces[0]
        assert face.confidence == pytest.approx(0.97)
        assert face.bounding_box.model_dump() == {"x": 10.0, "y": 20.0, "width": 50.0, "height": 70.0}
        assert face.embedding.shape == (DIM,)

    async def test_downscales_and_maps_boxes_back(self):
        detector, model, _ = make_detector([raw_face([100, 50, 300, 250])], max_dimension=1024)

        result = await detector.detect(jpeg(2048, 1024))

        assert model.shapes[0][:2] == (512, 1024)
        box = result.value.faces[0].bounding_box
        assert (box.x, box.y, box.width, box.height) == (200.0, 100.0, 400.0, 400.0)

    async def test_boxes_clipped_to_image(self):
        detector, _, _ = make_detector([raw_face([-10, -5, 250, 40])])

        result = await detector.detect(jpeg(200, 150))

        box = result.value.faces[0].bounding_box
        assert (box.x, box.y, box.width, box.height) == (0.0, 0.0, 200.0, 40.0)

    async def test_low_confidence_faces_dropped(self):
        detector, _, _ = make_detector(
            [raw_face([0, 0, 10, 10], score=0.3), raw_face([0, 0, 20, 20], score=0.8)],
            min_confidence=0.5,
        )

        result = await detector.detect(jpeg(100, 100))
        assert [f.confidence for f in result.value.faces] == [pytest.approx(0.8)]

    async def test_invalid_embeddings_dropped(self):
        nan_embedding = np.full(DIM, np.nan, dtype=np.float32)
        detector, _, _ = make_detector([
            raw_face([0, 0, 10, 10], embedding=np.ones(DIM + 1)),
            raw_face([0, 0, 10, 10], embedding=nan_embedding),
            raw_face([0, 0, 10, 10]),
        ])

        result = await detector.detect(jpeg(100, 100))
        assert len(result.value.faces) == 1

    async def test_unknown_format_never_loads_model(self):
        detector, _, loader = make_detector([])

        result = await detector.detect(b"GIF89a not supported")

        assert result.error.code is ErrorCode.INVALID_IMAGE
        assert loader.calls == 0

    async def test_undecodable_image(self):
        detector, _, _ = make_detector([])
        result = await detector.detect(b"\xff\xd8\xff" + b"\x01" * 64)
        assert result.error.code is ErrorCode.INVALID_IMAGE


class TestInsightFaceEmbed:
    """Largest-face embedding for the user photo."""

    async def test_returns_largest_face(self):
        small = raw_face([0, 0, 20, 20], seed=1)
        large = raw_face([30, 30, 90, 90], seed=2)
        detector, _, _ = make_detector([small, large])

        result = await detector.embed(jpeg(100, 100))

        np.testing.assert_allclose(result.value, np.asarray(large.embedding, dtype=np.float64))

    async def test_detected_embeddings_are_erased(self):
        detector, _, _ = make_detector([raw_face([0, 0, 20, 20], seed=1), raw_face([30, 30, 90, 90], seed=2)])
        detections = []
        detect = detector.detect

        async def recording_detect(image_bytes):
            result = await detect(image_bytes)
            detections.append(result)
            return result

        detector.detect = recording_detect

        result = await detector.embed(jpeg(100, 100))

        assert result.value.any()
        faces = detections[0].value.faces
        assert len(faces) == 2
        assert all(not face.embedding.any() for face in faces)

    async def test_no_face(self):
        detector, _, _ = make_detector([])
        result = await detector.embed(jpeg(100, 100))
        assert result.error.code is ErrorCode.NO_FACE_DETECTED


class TestInitialization:
    """One-shot model loading."""

    async def test_concurrent_callers_share_one_load(self):
        detector, _, loader = make_detector([raw_face([0, 0, 10, 10])])
        image = jpeg(100, 100)

        results = await asyncio.gather(*(detector.detect(image) for _ in range(5)))

        assert all(r.ok for r in results)
        assert loader.calls == 1
        assert detector.is_ready

    async def test_failed_load_is_retried(self):
        detector, _, loader = make_detector([raw_face([0, 0, 10, 10])], failures=1)
        image = jpeg(100, 100)

        first = await detector.detect(image)
        second = await detector.detect(image)

        assert first.error.code is ErrorCode.DETECTOR_UNAVAILABLE
        assert second.ok
        assert loader.calls == 2

    async def test_context_manager_releases_model(self):
        detector, _, _ = make_detector([])
        async with detector as ready:
            assert ready.is_ready
        assert not detector.is_ready
