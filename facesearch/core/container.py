"""Service container for dependency injection."""
import asyncio
from typing import List, Optional

from facesearch.core.config import settings
from facesearch.core.logging import get_logger
from facesearch.core.utils.security import EmbeddingCipher
from facesearch.domain.interfaces.recognition.face_detector import FaceDetector
from facesearch.infrastructure.http.guarded_client import GuardedHttpClient
from facesearch.services.audit import AuditLog
from facesearch.services.pipeline import PipelineOrchestrator
from facesearch.services.rate_limiter import RateLimiter
from facesearch.services.recognition.insight_face import InsightFaceDetector
from facesearch.services.scraping.site_scraper import SiteScraper
from facesearch.services.scraping.sites import SiteDescriptor, load_site_descriptors
from facesearch.services.session_store import SessionStore
from facesearch.services.thumbnail import ThumbnailProcessor

logger = get_logger(__name__)


class ServiceContainer:
    """Container for application services.

    This container manages the lifecycle and dependencies of all services in the application.
    It ensures proper initialization order and provides a single source of truth for service instances.

    Collaborators that talk to the outside world (the face detector, the
    HTTP client and the site list) can be supplied up front; anything left
    out is built from settings.

    Example:
        ```python
        container = ServiceContainer()
        await container.initialize()

        # Get services from container
        pipeline = container.pipeline
        limiter = container.rate_limiter
        ```
    """

    def __init__(
        self,
        detector: Optional[FaceDetector] = None,
        http_client: Optional[GuardedHttpClient] = None,
        sites: Optional[List[SiteDescriptor]] = None,
        start_sweepers: bool = True,
    ) -> None:
        """Initialize empty container."""
        self._detector_override = detector
        self._http_client_override = http_client
        self._sites_override = sites
        self.start_sweepers = start_sweepers

        # Core services
        self.audit_log: Optional[AuditLog] = None
        self.rate_limiter: Optional[RateLimiter] = None
        self.session_store: Optional[SessionStore] = None
        self.detector: Optional[FaceDetector] = None
        self.http_client: Optional[GuardedHttpClient] = None

        # Pipeline services
        self.scraper: Optional[SiteScraper] = None
        self.thumbnails: Optional[ThumbnailProcessor] = None
        self.pipeline: Optional[PipelineOrchestrator] = None

        self._sweepers: List[asyncio.Task] = []

    @property
    def is_initialized(self) -> bool:
        return self.pipeline is not None

    async def initialize(self) -> None:
        """Initialize all services in the correct order."""
        sites = self._sites_override if self._sites_override is not None else load_site_descriptors()

        self.audit_log = AuditLog(retention=settings.AUDIT_RETENTION)
        self.rate_limiter = RateLimiter(settings.rate_limit_policies, audit_log=self.audit_log)
        self.session_store = SessionStore(
            cipher=EmbeddingCipher.from_key_material(settings.ENCRYPTION_KEY),
            audit_log=self.audit_log,
        )
        self.detector = self._detector_override or InsightFaceDetector()
        self.http_client = self._http_client_override or GuardedHttpClient()

        self.scraper = SiteScraper(self.http_client, audit_log=self.audit_log)
        self.thumbnails = ThumbnailProcessor(self.http_client, self.detector, audit_log=self.audit_log)
        self.thumbnails.sweep_temp_dir()

        self.pipeline = PipelineOrchestrator(
            detector=self.detector,
            store=self.session_store,
            scraper=self.scraper,
            thumbnails=self.thumbnails,
            sites=sites,
            audit_log=self.audit_log,
        )

        if self.start_sweepers:
            self._sweepers = [
                asyncio.create_task(self.session_store.run_sweeper(), name="session-sweeper"),
                asyncio.create_task(self.rate_limiter.run_sweeper(), name="rate-limit-sweeper"),
            ]
        logger.info("Initialized services", sites=len(sites))

    async def cleanup(self) -> None:
        """Cleanup all services in reverse order of initialization."""
        for task in self._sweepers:
            task.cancel()
        if self._sweepers:
            await asyncio.gather(*self._sweepers, return_exceptions=True)
        self._sweepers = []

        if self.pipeline:
            await self.pipeline.shutdown()
            self.pipeline = None
        self.scraper = None
        self.thumbnails = None

        if self.session_store:
            self.session_store.close()
            self.session_store = None

        if self.http_client:
            await self.http_client.aclose()
            self.http_client = None

        if isinstance(self.detector, InsightFaceDetector):
            await self.detector.close()
        self.detector = None

        self.rate_limiter = None
        self.audit_log = None


# Global container instance
container = ServiceContainer()
