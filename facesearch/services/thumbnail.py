"""
Thumbnail download and face detection for discovered videos.

Downloads are streamed to a temp file under ``TEMP_DIR`` with a hard byte
cap. The file is removed when the candidate is done, whatever the outcome.
"""
import asyncio
import os
import tempfile
from pathlib import Path
from typing import Iterable, Optional

import httpx

from facesearch.core.config import settings
from facesearch.core.exceptions import BlockedUrlError, ErrorCode
from facesearch.core.logging import get_logger
from facesearch.core.utils.image import ImageTooLargeError, sniff_image_type, strip_metadata
from facesearch.domain.entities.video import VideoCandidate, VideoMatch
from facesearch.domain.interfaces.recognition.face_detector import FaceDetector
from facesearch.domain.value_objects.recognition import Result
from facesearch.infrastructure.http.guarded_client import GuardedHttpClient, ResponseTooLargeError
from facesearch.services.audit import AuditLog, SecurityEventType, Severity

logger = get_logger(__name__)

TEMP_PREFIX = "thumb-"


class ThumbnailDownloadError(Exception):
    """Raised when a thumbnail host answers with a non-success status."""


class ThumbnailProcessor:
    """
    Downloads a candidate's thumbnail and detects the faces in it.

    Failures never raise. Each one comes back as a failed ``Result`` so the
    pipeline can record it against the candidate and move on.

    Example:
        ```python
        processor = ThumbnailProcessor(http_client, detector, audit_log)
        result = await processor.process(candidate)
        if result.ok:
            faces = result.value.detected_faces
        ```
    """

    def __init__(
        self,
        http_client: GuardedHttpClient,
        detector: FaceDetector,
        audit_log: Optional[AuditLog] = None,
        temp_dir: Optional[str] = None,
        max_bytes: Optional[int] = None,
        timeout_ms: Optional[int] = None,
        allowed_mimes: Optional[Iterable[str]] = None,
        max_pixels: Optional[int] = None,
    ) -> None:
        self.http_client = http_client
        self.detector = detector
        self.audit_log = audit_log
        self.temp_dir = Path(temp_dir or settings.TEMP_DIR)
        self.max_bytes = max_bytes or settings.MAX_THUMBNAIL_SIZE
        self.timeout = (timeout_ms or settings.THUMBNAIL_TIMEOUT_MS) / 1000.0
        self.allowed_mimes = set(allowed_mimes or settings.allowed_image_mimes)
        self.max_pixels = max_pixels or settings.MAX_THUMBNAIL_PIXELS

    def sweep_temp_dir(self) -> int:
        """Remove leftover downloads from earlier runs.

        Returns:
            Number of files removed
        """
        self.temp_dir.mkdir(parents=True, exist_ok=True)
        removed = 0
        for path in self.temp_dir.glob(f"{TEMP_PREFIX}*"):
            try:
                path.unlink()
                removed += 1
            except OSError as e:
                logger.warning("Could not remove stale thumbnail", path=str(path), error=str(e))
        if removed:
            logger.info("Removed stale thumbnails", count=removed)
        return removed

    async def _download(self, url: str, path: Path) -> int:
        """Stream ``url`` into ``path``; returns the number of bytes written."""
        written = 0
        async with self.http_client.stream(url, timeout=self.timeout) as response:
            if not response.is_success:
                raise ThumbnailDownloadError(f"HTTP {response.status_code}")
            with open(path, "wb") as out:
                async for chunk in response.aiter_bytes():
                    written += len(chunk)
                    if written > self.max_bytes:
                        raise ResponseTooLargeError(url, self.max_bytes)
                    out.write(chunk)
        return written

    def _record_event(
        self,
        event_type: SecurityEventType,
        severity: Severity,
        candidate: VideoCandidate,
        session_id: Optional[str],
        **details,
    ) -> None:
        if self.audit_log is not None:
            self.audit_log.record_security_event(
                event_type,
                severity,
                session_id=session_id,
                details={"site": candidate.source_site, "video_id": candidate.id, **details},
            )

    async def process(self, candidate: VideoCandidate, session_id: Optional[str] = None) -> Result[VideoMatch]:
        """
        Download, validate and scan one thumbnail.

        Args:
            candidate: Video whose thumbnail should be scanned
            session_id: Session the work runs for, used in audit events

        Returns:
            A VideoMatch with every detected face and no score, or a failure
            with DOWNLOAD_TIMEOUT, DOWNLOAD_FAILED, SSRF_BLOCKED,
            INVALID_IMAGE, DETECTOR_UNAVAILABLE or INTERNAL_ERROR
        """
        try:
            return await self._process(candidate, session_id)
        except Exception as e:
            logger.error("Thumbnail processing failed", video_id=candidate.id, error=str(e), exc_info=True)
            return Result.failure(ErrorCode.INTERNAL_ERROR, "Thumbnail could not be processed")

    async def _process(self, candidate: VideoCandidate, session_id: Optional[str]) -> Result[VideoMatch]:
        self.temp_dir.mkdir(parents=True, exist_ok=True)
        fd, name = tempfile.mkstemp(prefix=TEMP_PREFIX, suffix=".img", dir=self.temp_dir)
        os.close(fd)
        path = Path(name)

        try:
            try:
                await asyncio.wait_for(self._download(candidate.thumbnail_url, path), timeout=self.timeout)
            except (asyncio.TimeoutError, httpx.TimeoutException):
                return Result.failure(ErrorCode.DOWNLOAD_TIMEOUT, "Thumbnail download timed out")
            except BlockedUrlError as e:
                logger.warning("Blocked thumbnail URL", video_id=candidate.id, reason=e.details.get("reason"))
                self._record_event(
                    SecurityEventType.SSRF_BLOCKED, Severity.HIGH, candidate, session_id, **e.details
                )
                return Result.failure(ErrorCode.SSRF_BLOCKED, "Thumbnail URL was blocked")
            except ResponseTooLargeError:
                return Result.failure(ErrorCode.DOWNLOAD_FAILED, "Thumbnail exceeds the size limit")
            except (ThumbnailDownloadError, httpx.HTTPError, OSError) as e:
                logger.info("Thumbnail download failed", video_id=candidate.id, error=str(e))
                return Result.failure(ErrorCode.DOWNLOAD_FAILED, "Thumbnail could not be downloaded")

            try:
                data = await asyncio.to_thread(path.read_bytes)
            except OSError as e:
                logger.warning("Downloaded thumbnail could not be read", video_id=candidate.id, error=str(e))
                return Result.failure(ErrorCode.DOWNLOAD_FAILED, "Thumbnail could not be read")

            mime = sniff_image_type(data)
            if mime is None or mime not in self.allowed_mimes:
                self._record_event(
                    SecurityEventType.MALICIOUS_FILE, Severity.HIGH, candidate, session_id,
                    reason="magic number mismatch",
                )
                return Result.failure(ErrorCode.INVALID_IMAGE, "Thumbnail is not a supported image")

            try:
                clean = await asyncio.to_thread(strip_metadata, data, self.max_pixels)
            except ImageTooLargeError as e:
                self._record_event(
                    SecurityEventType.MALICIOUS_FILE, Severity.HIGH, candidate, session_id,
                    reason="pixel count exceeds limit",
                )
                logger.warning("Thumbnail has too many pixels", video_id=candidate.id, error=str(e))
                return Result.failure(ErrorCode.INVALID_IMAGE, "Thumbnail dimensions exceed the limit")
            except ValueError as e:
                self._record_event(
                    SecurityEventType.MALICIOUS_FILE, Severity.MEDIUM, candidate, session_id,
                    reason="image verification failed",
                )
                logger.info("Thumbnail failed verification", video_id=candidate.id, error=str(e))
                return Result.failure(ErrorCode.INVALID_IMAGE, "Thumbnail could not be verified")

            detection = await self.detector.detect(clean)
            if not detection.ok:
                return Result.failure(detection.error.code, detection.error.message)

            return Result.success(
                VideoMatch(candidate=candidate, detected_faces=detection.value.faces)
            )
        finally:
            try:
                path.unlink()
            except FileNotFoundError:
                pass
