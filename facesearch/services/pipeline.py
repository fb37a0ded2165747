"""
Search pipeline orchestration.

``start_search`` turns an uploaded photo into a session and hands the
expensive part to a background worker:

1. validate the upload and extract the largest face's embedding
2. create the session holding the sealed embedding
3. spawn a worker that discovers candidates on every configured site,
   scans each thumbnail, scores the faces and appends matches as they
   complete

Per-site and per-candidate failures are collected in the session and never
stop the search. Results are read back by polling ``get_results``.
"""
import asyncio
from datetime import datetime
from typing import Iterable, List, Optional, Sequence, Set

import numpy as np
from pydantic import BaseModel, Field

from facesearch.core.config import settings
from facesearch.core.exceptions import (
    DimensionMismatchError,
    ErrorCode,
    FaceSearchError,
    InvalidInputError,
    SessionClosedError,
    SessionExpiredError,
    SessionNotFoundError,
    exception_for,
)
from facesearch.core.logging import bind_context, get_logger
from facesearch.core.utils.security import secure_erase
from facesearch.core.utils.validation import validate_image_upload, validate_search_id, validate_threshold
from facesearch.domain.entities.session import SearchError, SessionStats, SessionStatus
from facesearch.domain.entities.video import VideoCandidate, VideoMatch
from facesearch.domain.interfaces.recognition.face_detector import FaceDetector
from facesearch.services.audit import AccessOperation, AuditLog, DataType, SecurityEventType, Severity
from facesearch.services.scraping.site_scraper import SiteScraper
from facesearch.services.scraping.sites import SiteDescriptor
from facesearch.services.session_store import SessionStore
from facesearch.services.similarity import MatchStatistics, best_match, filter_matches, rank_matches, statistics
from facesearch.services.thumbnail import ThumbnailProcessor

logger = get_logger(__name__)

_SESSION_GONE = (SessionNotFoundError, SessionExpiredError, SessionClosedError)


class SearchResults(BaseModel):
    """What a caller sees of a session at one point in time."""
    search_id: str
    status: SessionStatus
    progress: float
    threshold: float
    results: List[VideoMatch] = Field(default_factory=list)
    processed_sites: List[str] = Field(default_factory=list)
    errors: List[SearchError] = Field(default_factory=list)
    statistics: MatchStatistics = Field(default_factory=MatchStatistics)
    error: Optional[ErrorCode] = None


class SessionInfo(BaseModel):
    """Session metadata without the matches themselves."""
    search_id: str
    status: SessionStatus
    progress: float
    threshold: float
    created_at: datetime
    expires_at: datetime
    match_count: int = Field(..., description="Matches meeting the session threshold")
    processed_sites: List[str] = Field(default_factory=list)


class CleanupReport(BaseModel):
    """Outcome of a manual expiry sweep."""
    before: int
    cleaned: int
    after: int


async def _gather_settled(coroutines: Iterable) -> None:
    """Run coroutines to completion, then re-raise the first failure.

    One failure never cancels its siblings. Cancelling the caller cancels
    every coroutine.
    """
    results = await asyncio.gather(*coroutines, return_exceptions=True)
    for result in results:
        if isinstance(result, BaseException):
            raise result


class PipelineOrchestrator:
    """
    Runs face searches and serves their results.

    Example:
        ```python
        pipeline = PipelineOrchestrator(detector, store, scraper, thumbnails, sites, audit_log)
        search_id = await pipeline.start_search(image_bytes, principal="203.0.113.7")
        results = await pipeline.get_results(search_id)
        ```
    """

    def __init__(
        self,
        detector: FaceDetector,
        store: SessionStore,
        scraper: SiteScraper,
        thumbnails: ThumbnailProcessor,
        sites: Sequence[SiteDescriptor],
        audit_log: AuditLog,
        concurrency_sites: Optional[int] = None,
        concurrency_thumbs: Optional[int] = None,
        coarse_floor: Optional[float] = None,
        max_results: Optional[int] = None,
    ) -> None:
        self.detector = detector
        self.store = store
        self.scraper = scraper
        self.thumbnails = thumbnails
        self.sites = list(sites)
        self.audit_log = audit_log
        self.concurrency_sites = concurrency_sites or settings.CONCURRENCY_SITES
        self.concurrency_thumbs = concurrency_thumbs or settings.CONCURRENCY_THUMBS
        self.coarse_floor = settings.COARSE_SIMILARITY_FLOOR if coarse_floor is None else coarse_floor
        self.max_results = max_results or settings.MAX_RESULTS
        self._workers: Set[asyncio.Task] = set()

    async def start_search(
        self,
        image_bytes: bytes,
        principal: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> str:
        """
        Validate the photo, embed its largest face and start the search.

        Returns:
            The new search id

        Raises:
            InvalidInputError: If the upload fails size or type checks
            NoFaceDetectedError: If the photo holds no usable face
            InvalidImageError: If the photo cannot be decoded
            DetectorUnavailableError: If the model cannot be loaded
        """
        try:
            validate_image_upload(
                image_bytes,
                min_size=settings.MIN_FILE_SIZE,
                max_size=settings.MAX_FILE_SIZE,
                allowed_mimes=settings.allowed_image_mimes,
            )
        except InvalidInputError as e:
            self.audit_log.record_security_event(
                SecurityEventType.INVALID_INPUT,
                Severity.LOW,
                principal=principal,
                details={"code": e.code.value, "size": len(image_bytes)},
            )
            raise

        result = await self.detector.embed(image_bytes)
        self.audit_log.record_access(
            AccessOperation.READ,
            None,
            DataType.IMAGE_DATA,
            success=result.ok,
            error_code=None if result.ok else result.error.code.value,
            principal=principal,
            user_agent=user_agent,
        )
        if not result.ok:
            raise exception_for(result.error.code, result.error.message)

        embedding = result.value
        try:
            session_id = self.store.create(embedding, principal=principal, user_agent=user_agent)
        finally:
            secure_erase(embedding)

        with bind_context(session_id=session_id):
            task = asyncio.create_task(self._run(session_id), name=f"search-{session_id[:8]}")
        self._workers.add(task)
        task.add_done_callback(self._workers.discard)
        self.store.attach_worker(session_id, task)
        logger.info("Started search", session_id=session_id, sites=len(self.sites))
        return session_id

    async def _run(self, session_id: str) -> None:
        """Search every site for one session, then complete it."""
        try:
            user_embedding = self.store.user_embedding(session_id)
        except _SESSION_GONE:
            return

        site_slots = asyncio.Semaphore(self.concurrency_sites)
        thumb_slots = asyncio.Semaphore(self.concurrency_thumbs)
        site_share = 100.0 / len(self.sites) if self.sites else 0.0

        try:
            await _gather_settled(
                self._search_site(session_id, site, user_embedding, site_share, site_slots, thumb_slots)
                for site in self.sites
            )
            self.store.complete(session_id)
        except _SESSION_GONE:
            logger.info("Session closed during search, stopping worker", session_id=session_id)
        except asyncio.CancelledError:
            logger.info("Search worker cancelled", session_id=session_id)
            raise
        except Exception as e:
            logger.error("Search worker failed", session_id=session_id, error=str(e), exc_info=True)
            try:
                self.store.complete(session_id, ErrorCode.INTERNAL_ERROR)
            except FaceSearchError:
                pass
        finally:
            secure_erase(user_embedding)

    async def _search_site(
        self,
        session_id: str,
        site: SiteDescriptor,
        user_embedding: np.ndarray,
        site_share: float,
        site_slots: asyncio.Semaphore,
        thumb_slots: asyncio.Semaphore,
    ) -> None:
        async with site_slots:
            discovered = await self.scraper.discover(site, session_id=session_id)
            if not discovered.ok:
                self.store.record_site(
                    session_id,
                    site.name,
                    SearchError(source=site.name, code=discovered.error.code, message=discovered.error.message),
                )
                self.store.append_matches(session_id, [], site_share)
                return

            candidates = discovered.value
            if candidates:
                share = site_share / len(candidates)
                await _gather_settled(
                    self._score_candidate(session_id, candidate, user_embedding, share, thumb_slots)
                    for candidate in candidates
                )
            else:
                self.store.append_matches(session_id, [], site_share)
            self.store.record_site(session_id, site.name)

    def _record_candidate_failure(
        self, session_id: str, candidate: VideoCandidate, share: float, code: ErrorCode, message: str
    ) -> None:
        self.store.append_matches(
            session_id,
            [],
            share,
            errors=[
                SearchError(
                    source=candidate.source_site,
                    code=code,
                    message=message,
                    candidate_id=candidate.id,
                )
            ],
        )

    async def _score_candidate(
        self,
        session_id: str,
        candidate: VideoCandidate,
        user_embedding: np.ndarray,
        share: float,
        thumb_slots: asyncio.Semaphore,
    ) -> None:
        try:
            await self._scan_candidate(session_id, candidate, user_embedding, share, thumb_slots)
        except _SESSION_GONE:
            raise
        except Exception as e:
            logger.error(
                "Candidate failed", session_id=session_id, video_id=candidate.id, error=str(e), exc_info=True
            )
            self._record_candidate_failure(
                session_id, candidate, share, ErrorCode.INTERNAL_ERROR, "Candidate could not be processed"
            )

    async def _scan_candidate(
        self,
        session_id: str,
        candidate: VideoCandidate,
        user_embedding: np.ndarray,
        share: float,
        thumb_slots: asyncio.Semaphore,
    ) -> None:
        async with thumb_slots:
            processed = await self.thumbnails.process(candidate, session_id=session_id)

        if not processed.ok:
            self._record_candidate_failure(
                session_id, candidate, share, processed.error.code, processed.error.message
            )
            return

        faces = processed.value.detected_faces
        try:
            kept, best = best_match(user_embedding, faces, self.coarse_floor)
        except DimensionMismatchError as e:
            for face in faces:
                secure_erase(face.embedding)
            self._record_candidate_failure(
                session_id, candidate, share, e.code, "Thumbnail embeddings do not match the user embedding"
            )
            return

        kept_ids = {id(face) for face in kept}
        for face in faces:
            if id(face) not in kept_ids:
                secure_erase(face.embedding)

        matches = []
        if best is not None:
            matches.append(VideoMatch(candidate=candidate, detected_faces=kept, best_similarity=best))
        try:
            self.store.append_matches(session_id, matches, share)
        except _SESSION_GONE:
            for face in kept:
                secure_erase(face.embedding)
            raise

    async def get_results(
        self,
        search_id: str,
        threshold: Optional[float] = None,
        principal: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> SearchResults:
        """
        Return the session's matches at the stored or supplied threshold.

        Results are sorted by score descending, then source site, then id,
        and capped at ``max_results``.

        Raises:
            InvalidSessionIdError: If the id is malformed
            InvalidInputError: If the threshold is out of range
            SessionNotFoundError: If the session does not exist
            SessionExpiredError: If the session outlived its TTL
        """
        validate_search_id(search_id)
        if threshold is not None:
            threshold = validate_threshold(threshold)
            self.store.set_threshold(search_id, threshold)

        snapshot = self.store.get(search_id, principal=principal, user_agent=user_agent)
        visible = rank_matches(filter_matches(snapshot.matches, snapshot.threshold))
        return SearchResults(
            search_id=snapshot.id,
            status=snapshot.status,
            progress=snapshot.progress,
            threshold=snapshot.threshold,
            results=visible[:self.max_results],
            processed_sites=snapshot.processed_sites,
            errors=snapshot.errors,
            statistics=statistics(visible),
            error=snapshot.error,
        )

    async def configure_search(
        self,
        search_id: str,
        threshold: float,
        principal: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> SearchResults:
        """Apply a new threshold to a session and return the refiltered results."""
        return await self.get_results(search_id, threshold, principal=principal, user_agent=user_agent)

    async def delete_session(
        self,
        search_id: str,
        principal: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> bool:
        """Erase a session and stop its worker. Unknown ids are not an error."""
        validate_search_id(search_id)
        return self.store.delete(search_id, principal=principal, user_agent=user_agent)

    async def get_session(
        self,
        search_id: str,
        principal: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> SessionInfo:
        """
        Return a session's status, timestamps and match count.

        Raises:
            InvalidSessionIdError: If the id is malformed
            SessionNotFoundError: If the session does not exist
            SessionExpiredError: If the session outlived its TTL
        """
        validate_search_id(search_id)
        snapshot = self.store.get(search_id, principal=principal, user_agent=user_agent)
        return SessionInfo(
            search_id=snapshot.id,
            status=snapshot.status,
            progress=snapshot.progress,
            threshold=snapshot.threshold,
            created_at=snapshot.created_at,
            expires_at=snapshot.expires_at,
            match_count=len(filter_matches(snapshot.matches, snapshot.threshold)),
            processed_sites=snapshot.processed_sites,
        )

    async def session_stats(self) -> SessionStats:
        """Counts of live sessions by status, with the oldest and newest creation times."""
        return self.store.stats()

    async def cleanup_sessions(self) -> CleanupReport:
        """Expire overdue sessions now instead of waiting for the sweeper."""
        before = len(self.store)
        cleaned = self.store.sweep_expired()
        report = CleanupReport(before=before, cleaned=cleaned, after=len(self.store))
        logger.info("Manual session cleanup", **report.model_dump())
        return report

    async def shutdown(self) -> None:
        """Cancel every running search worker and wait for them to stop."""
        workers = list(self._workers)
        for task in workers:
            task.cancel()
        if workers:
            await asyncio.gather(*workers, return_exceptions=True)
        logger.info("Stopped search workers", count=len(workers))
