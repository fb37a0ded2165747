"""Shared fixtures and fakes for the test suite."""
import asyncio
import io
import math
import os
import struct
import tempfile
import zlib
from typing import Dict, List, Optional

os.environ.setdefault("TEMP_DIR", tempfile.mkdtemp(prefix="facesearch-tests-"))
os.environ.setdefault("ENVIRONMENT", "test")

import httpx
import numpy as np
import pytest
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from PIL import Image

from facesearch.core.utils.image import bytes_to_numpy_array
from facesearch.core.utils.security import EmbeddingCipher
from facesearch.domain.entities.face import BoundingBox, FaceDetection, largest_face
from facesearch.domain.interfaces.recognition.face_detector import FaceDetector
from facesearch.domain.value_objects.recognition import DetectionResult, Result
from facesearch.core.exceptions import ErrorCode
from facesearch.infrastructure.http.guarded_client import GuardedHttpClient
from facesearch.services.audit import AuditLog
from facesearch.services.pipeline import PipelineOrchestrator
from facesearch.services.scraping.site_scraper import SiteScraper
from facesearch.services.scraping.sites import SiteDescriptor
from facesearch.services.session_store import SessionStore
from facesearch.services.thumbnail import ThumbnailProcessor

DIM = 128
PUBLIC_ADDRESS = "93.184.216.34"
LEVEL_TOLERANCE = 4


def unit(vector: np.ndarray) -> np.ndarray:
    return vector / np.linalg.norm(vector)


def user_vector(dim: int = DIM) -> np.ndarray:
    """A fixed unit vector used as the user's face."""
    rng = np.random.default_rng(7)
    return unit(rng.normal(size=dim))


def vector_with_score(base: np.ndarray, score: float, seed: int = 11) -> np.ndarray:
    """A vector whose cosine similarity with ``base`` is ``score``."""
    rng = np.random.default_rng(seed)
    other = rng.normal(size=base.size)
    other = unit(other - np.dot(other, base) * base)
    return score * base + math.sqrt(max(0.0, 1.0 - score * score)) * other


def make_face(embedding: np.ndarray, x: float = 10, y: float = 10, size: float = 40,
              confidence: float = 0.95) -> FaceDetection:
    return FaceDetection(
        bounding_box=BoundingBox(x=x, y=y, width=size, height=size),
        embedding=np.array(embedding, dtype=np.float64),
        confidence=confidence,
    )


def solid_jpeg(level: int, size: int = 64) -> bytes:
    """A uniform gray JPEG; the fake detector keys thumbnails by gray level."""
    buffer = io.BytesIO()
    Image.new("RGB", (size, size), (level, level, level)).save(buffer, format="JPEG", quality=95)
    return buffer.getvalue()


def noise_jpeg(size: int = 512, seed: int = 0) -> bytes:
    """A noisy JPEG standing in for the user's photo."""
    rng = np.random.default_rng(seed)
    pixels = rng.integers(0, 256, size=(size, size, 3), dtype=np.uint8)
    buffer = io.BytesIO()
    Image.fromarray(pixels, "RGB").save(buffer, format="JPEG", quality=90)
    return buffer.getvalue()


def forged_png(width: int, height: int) -> bytes:
    """A tiny PNG whose header claims ``width`` x ``height`` pixels."""
    def chunk(kind: bytes, data: bytes) -> bytes:
        crc = zlib.crc32(kind + data) & 0xFFFFFFFF
        return struct.pack(">I", len(data)) + kind + data + struct.pack(">I", crc)

    header = struct.pack(">IIBBBBB", width, height, 8, 2, 0, 0, 0)
    return (
        b"\x89PNG\r\n\x1a\n"
        + chunk(b"IHDR", header)
        + chunk(b"IDAT", zlib.compress(b"\x00" * 64))
        + chunk(b"IEND", b"")
    )


def listing_html(items) -> str:
    """Listing page with one ``.video-item`` per ``(href, src, title)``."""
    blocks = []
    for href, src, title in items:
        title_html = f"<h3>{title}</h3>" if title else ""
        blocks.append(
            f'<div class="video-item"><a href="{href}">{title_html}<img src="{src}"></a></div>'
        )
    return "<html><body>" + "".join(blocks) + "</body></html>"


def make_site(name: str, base_url: str, max_videos: int = 10) -> SiteDescriptor:
    return SiteDescriptor(
        name=name,
        base_url=base_url,
        max_videos=max_videos,
        selectors={"container": ".video-item", "title": "h3", "thumbnail": "img", "link": "a"},
    )


async def public_resolver(host: str, port: int) -> List[str]:
    return [PUBLIC_ADDRESS]


class FakeDetector(FaceDetector):
    """Detector that answers from tables instead of a model.

    Noisy images are treated as the user's photo. Uniform images are
    thumbnails looked up by their gray level.
    """

    def __init__(
        self,
        user_faces: Optional[List[FaceDetection]] = None,
        thumbnails: Optional[Dict[int, List[FaceDetection]]] = None,
        failures: Optional[Dict[int, ErrorCode]] = None,
        dim: int = DIM,
    ) -> None:
        self.user_faces = user_faces or []
        self.thumbnails = thumbnails or {}
        self.failures = failures or {}
        self.dim = dim
        self.calls = 0

    @property
    def embedding_dim(self) -> int:
        return self.dim

    async def initialize(self) -> None:
        return None

    @staticmethod
    def _copy(faces: List[FaceDetection]) -> List[FaceDetection]:
        return [
            FaceDetection(
                bounding_box=face.bounding_box,
                embedding=face.embedding.copy(),
                confidence=face.confidence,
            )
            for face in faces
        ]

    def _lookup(self, table: dict, level: int):
        for key, value in table.items():
            if abs(key - level) <= LEVEL_TOLERANCE:
                return value
        return None

    async def detect(self, image_bytes: bytes) -> Result[DetectionResult]:
        self.calls += 1
        try:
            image = bytes_to_numpy_array(image_bytes)
        except ValueError:
            return Result.failure(ErrorCode.INVALID_IMAGE, "Image could not be decoded")
        await asyncio.sleep(0)

        height, width = image.shape[:2]
        if float(image.std()) > 20.0:
            faces = self.user_faces
        else:
            level = int(round(float(image.mean())))
            failure = self._lookup(self.failures, level)
            if failure is not None:
                return Result.failure(failure, "detector failure")
            faces = self._lookup(self.thumbnails, level) or []
        return Result.success(
            DetectionResult(faces=self._copy(faces), image_width=width, image_height=height)
        )

    async def embed(self, image_bytes: bytes) -> Result[np.ndarray]:
        result = await self.detect(image_bytes)
        if not result.ok:
            return Result.failure(result.error.code, result.error.message)
        face = largest_face(result.value.faces)
        if face is None:
            return Result.failure(ErrorCode.NO_FACE_DETECTED, "No face detected in image")
        return Result.success(face.embedding.copy())


class Routes:
    """Route table for ``httpx.MockTransport``.

    Values are ``(status, body)`` tuples, ``(status, body, headers)`` tuples
    or async callables taking the request.
    """

    def __init__(self, routes: Optional[dict] = None) -> None:
        self.routes = dict(routes or {})
        self.requested: List[str] = []

    def __setitem__(self, url: str, value) -> None:
        self.routes[url] = value

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        self.requested.append(url)
        entry = self.routes.get(url)
        if entry is None:
            return httpx.Response(404, content=b"not found")
        if callable(entry):
            return await entry(request)
        status, body = entry[0], entry[1]
        headers = entry[2] if len(entry) > 2 else None
        if isinstance(body, str):
            body = body.encode("utf-8")
        return httpx.Response(status, content=body, headers=headers)


class InFlight:
    """Counts concurrent requests served by its handlers."""

    def __init__(self) -> None:
        self.current = 0
        self.peak = 0
        self.completed = 0

    def handler(self, body: bytes, delay: float = 0.05):
        async def respond(request: httpx.Request) -> httpx.Response:
            self.current += 1
            self.peak = max(self.peak, self.current)
            try:
                await asyncio.sleep(delay)
            finally:
                self.current -= 1
            self.completed += 1
            return httpx.Response(200, content=body)

        return respond


def make_client(routes: Routes, allowed_hosts=("example.com",), **kwargs) -> GuardedHttpClient:
    return GuardedHttpClient(
        allowed_hosts=list(allowed_hosts),
        transport=httpx.MockTransport(routes),
        resolver=kwargs.pop("resolver", public_resolver),
        **kwargs,
    )


@pytest.fixture
def audit_log() -> AuditLog:
    return AuditLog(retention=1000)


@pytest.fixture
def cipher() -> EmbeddingCipher:
    return EmbeddingCipher(AESGCM.generate_key(bit_length=256))


class FakeClock:
    """Millisecond clock that only moves when told to."""

    def __init__(self, start: float = 1_700_000_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float) -> None:
        self.now += ms


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def routes() -> Routes:
    return Routes()


@pytest.fixture
async def build_pipeline(tmp_path, audit_log, cipher, routes):
    """Factory wiring a pipeline around fakes."""
    clients = []
    pipelines = []

    def _build(
        detector: FaceDetector,
        sites: List[SiteDescriptor],
        ttl_ms: Optional[int] = None,
        site_timeout_ms: int = 2000,
        thumb_timeout_ms: int = 2000,
        **kwargs,
    ) -> PipelineOrchestrator:
        client = make_client(routes)
        clients.append(client)
        store = SessionStore(cipher=cipher, audit_log=audit_log, ttl_ms=ttl_ms)
        scraper = SiteScraper(client, audit_log=audit_log, timeout_ms=site_timeout_ms)
        thumbnails = ThumbnailProcessor(
            client,
            detector,
            audit_log=audit_log,
            temp_dir=str(tmp_path / "thumbs"),
            timeout_ms=thumb_timeout_ms,
        )
        pipeline = PipelineOrchestrator(detector, store, scraper, thumbnails, sites, audit_log, **kwargs)
        pipelines.append(pipeline)
        return pipeline

    yield _build

    for pipeline in pipelines:
        await pipeline.shutdown()
    for client in clients:
        await client.aclose()


async def wait_for_terminal(pipeline: PipelineOrchestrator, search_id: str, timeout: float = 10.0):
    """Poll until the session leaves the processing state."""
    deadline = asyncio.get_running_loop().time() + timeout
    while True:
        results = await pipeline.get_results(search_id)
        if results.status.is_terminal:
            return results
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("search did not finish in time")
        await asyncio.sleep(0.01)
