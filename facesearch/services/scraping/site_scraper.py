"""
Video discovery on configured sites.

The scraper fetches a site's listing page through the guarded HTTP client
and reads video records out of it with the descriptor's CSS selectors.
Every extracted URL is checked before it is handed on; URLs that fail the
checks are dropped and recorded as ``ssrf-blocked`` security events.
"""
import asyncio
import hashlib
import re
from typing import List, Optional
from urllib.parse import urljoin

import httpx
from bs4 import BeautifulSoup

from facesearch.core.config import settings
from facesearch.core.exceptions import BlockedUrlError, ErrorCode
from facesearch.core.logging import get_logger
from facesearch.domain.entities.video import VideoCandidate
from facesearch.domain.value_objects.recognition import Result
from facesearch.infrastructure.http.guarded_client import GuardedHttpClient, ResponseTooLargeError
from facesearch.services.audit import AuditLog, SecurityEventType, Severity
from facesearch.services.scraping.sites import SiteDescriptor

logger = get_logger(__name__)

MAX_LISTING_BYTES = 2 * 1024 * 1024
MAX_TITLE_LENGTH = 200

_SLUG_PATTERN = re.compile(r"[^a-z0-9]+")


def candidate_id(site_name: str, page_url: str) -> str:
    """Stable id: slug of the site name plus a short digest of the page URL."""
    slug = _SLUG_PATTERN.sub("-", site_name.lower()).strip("-") or "site"
    digest = hashlib.blake2b(page_url.encode("utf-8"), digest_size=6).hexdigest()
    return f"{slug}-{digest}"


class SiteScraper:
    """Discovers video candidates on one site at a time.

    Example:
        ```python
        scraper = SiteScraper(http_client, audit_log)
        result = await scraper.discover(site)
        if result.ok:
            for candidate in result.value:
                ...
        ```
    """

    def __init__(
        self,
        http_client: GuardedHttpClient,
        audit_log: Optional[AuditLog] = None,
        timeout_ms: Optional[int] = None,
        max_listing_bytes: int = MAX_LISTING_BYTES,
    ) -> None:
        self.http_client = http_client
        self.audit_log = audit_log
        self.timeout = (timeout_ms or settings.SITE_TIMEOUT_MS) / 1000.0
        self.max_listing_bytes = max_listing_bytes

    def _record_blocked(self, error: BlockedUrlError, site: SiteDescriptor, session_id: Optional[str]) -> None:
        logger.warning("Blocked URL", site=site.name, reason=error.details.get("reason"))
        if self.audit_log is not None:
            self.audit_log.record_security_event(
                SecurityEventType.SSRF_BLOCKED,
                Severity.HIGH,
                session_id=session_id,
                details={"site": site.name, **error.details},
            )

    async def discover(self, site: SiteDescriptor, session_id: Optional[str] = None) -> Result[List[VideoCandidate]]:
        """
        Fetch a site's listing page and extract up to ``max_videos`` candidates.

        Args:
            site: Descriptor of the site to search
            session_id: Session the discovery runs for, used in audit events

        Returns:
            Candidates in page order, or a failure with SITE_TIMEOUT,
            SITE_UNAVAILABLE or SSRF_BLOCKED
        """
        logger.info("Discovering videos", site=site.name)
        try:
            status, html = await asyncio.wait_for(
                self.http_client.get_text(site.base_url, self.max_listing_bytes, timeout=self.timeout),
                timeout=self.timeout,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException):
            logger.warning("Site timed out", site=site.name, timeout=self.timeout)
            return Result.failure(ErrorCode.SITE_TIMEOUT, f"{site.name} did not respond in time")
        except BlockedUrlError as e:
            self._record_blocked(e, site, session_id)
            return Result.failure(ErrorCode.SSRF_BLOCKED, f"{site.name} listing URL was blocked")
        except ResponseTooLargeError:
            return Result.failure(ErrorCode.SITE_UNAVAILABLE, f"{site.name} listing page is too large")
        except httpx.HTTPError as e:
            logger.warning("Site request failed", site=site.name, error=str(e))
            return Result.failure(ErrorCode.SITE_UNAVAILABLE, f"{site.name} could not be reached")

        if status >= 400 or status < 200:
            logger.warning("Site returned an error status", site=site.name, status=status)
            return Result.failure(ErrorCode.SITE_UNAVAILABLE, f"{site.name} returned HTTP {status}")

        try:
            candidates = self.parse_listing(site, html, session_id)
        except Exception as e:
            logger.error("Listing could not be parsed", site=site.name, error=str(e), exc_info=True)
            return Result.failure(ErrorCode.SITE_UNAVAILABLE, f"{site.name} listing could not be read")
        logger.info("Discovered videos", site=site.name, count=len(candidates))
        return Result.success(candidates)

    def _checked_url(self, raw: str, site: SiteDescriptor, session_id: Optional[str]) -> Optional[str]:
        try:
            try:
                url = urljoin(site.base_url, raw.strip())
            except ValueError as e:
                raise BlockedUrlError(
                    "URL is malformed", details={"url": raw[:200], "reason": "malformed", "error": str(e)}
                )
            self.http_client.validate_url(url)
        except BlockedUrlError as e:
            self._record_blocked(e, site, session_id)
            return None
        return url

    def parse_listing(self, site: SiteDescriptor, html: str, session_id: Optional[str] = None) -> List[VideoCandidate]:
        """Extract candidates from listing HTML in page order."""
        soup = BeautifulSoup(html, "html.parser")
        candidates: List[VideoCandidate] = []
        seen = set()

        for index, container in enumerate(soup.select(site.selectors.container)):
            if len(candidates) >= site.max_videos:
                break

            thumbnail_el = container.select_one(site.selectors.thumbnail)
            link_el = container.select_one(site.selectors.link)
            thumbnail = (thumbnail_el.get("src") or thumbnail_el.get("data-src")) if thumbnail_el else None
            href = link_el.get("href") if link_el else None
            if not thumbnail or not href:
                continue

            thumbnail_url = self._checked_url(thumbnail, site, session_id)
            page_url = self._checked_url(href, site, session_id)
            if thumbnail_url is None or page_url is None:
                continue

            video_id = candidate_id(site.name, page_url)
            if video_id in seen:
                continue
            seen.add(video_id)

            title_el = container.select_one(site.selectors.title)
            title = title_el.get_text(" ", strip=True) if title_el else ""
            candidates.append(
                VideoCandidate(
                    id=video_id,
                    title=(title or f"Video {index + 1}")[:MAX_TITLE_LENGTH],
                    page_url=page_url,
                    thumbnail_url=thumbnail_url,
                    source_site=site.name,
                )
            )
        return candidates
