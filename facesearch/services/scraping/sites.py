"""Site descriptors: the data that tells the scraper how to read a site."""
import json
from pathlib import Path
from typing import Iterable, List, Optional, Union
from urllib.parse import urlsplit

import soupsieve
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from facesearch.core.config import settings
from facesearch.core.exceptions import SiteConfigurationError
from facesearch.core.logging import get_logger
from facesearch.infrastructure.http.guarded_client import host_allowed

logger = get_logger(__name__)

MAX_VIDEOS_PER_SITE = 100


class SiteSelectors(BaseModel):
    """CSS selectors used to pull video records out of a listing page.

    Each selector is compiled when the descriptor is loaded.
    """
    container: str
    title: str
    thumbnail: str
    link: str

    @field_validator("container", "title", "thumbnail", "link")
    @classmethod
    def validate_selector(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("selector must not be empty")
        try:
            soupsieve.compile(v)
        except soupsieve.SelectorSyntaxError as e:
            raise ValueError(f"invalid CSS selector {v!r}: {e}")
        return v


class SiteDescriptor(BaseModel):
    """One site to search. Sites differ only in data, never in code."""
    name: str = Field(..., min_length=1, max_length=100)
    base_url: str = Field(..., description="Listing page fetched for this site")
    max_videos: int = Field(..., ge=1, le=MAX_VIDEOS_PER_SITE)
    selectors: SiteSelectors

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    @field_validator("base_url")
    @classmethod
    def validate_base_url(cls, v: str) -> str:
        parts = urlsplit(v)
        if parts.scheme not in ("http", "https") or not parts.hostname:
            raise ValueError("baseUrl must be an absolute http(s) URL")
        return v

    @property
    def host(self) -> str:
        return (urlsplit(self.base_url).hostname or "").lower()


def parse_site_descriptors(raw: Union[str, bytes], allowed_hosts: Iterable[str]) -> List[SiteDescriptor]:
    """
    Parse and validate a JSON array of site descriptors.

    Raises:
        SiteConfigurationError: If the document is malformed, a descriptor is
            invalid, names repeat or a base URL host is not allowlisted
    """
    try:
        entries = json.loads(raw)
    except json.JSONDecodeError as e:
        raise SiteConfigurationError(f"Site descriptor file is not valid JSON: {e}")
    if not isinstance(entries, list):
        raise SiteConfigurationError("Site descriptor file must contain a JSON array")

    allowed = [host.lower() for host in allowed_hosts]
    sites: List[SiteDescriptor] = []
    for index, entry in enumerate(entries):
        try:
            site = SiteDescriptor.model_validate(entry)
        except ValidationError as e:
            raise SiteConfigurationError(f"Site descriptor {index} is invalid: {e}")
        if not host_allowed(site.host, allowed):
            raise SiteConfigurationError(
                f"Site descriptor {site.name!r} points to a host outside ALLOWED_VIDEO_HOSTS"
            )
        if any(existing.name == site.name for existing in sites):
            raise SiteConfigurationError(f"Duplicate site name {site.name!r}")
        sites.append(site)
    return sites


def load_site_descriptors(
    path: Optional[str] = None,
    allowed_hosts: Optional[Iterable[str]] = None,
) -> List[SiteDescriptor]:
    """Load the descriptor file named by ``SITE_DESCRIPTORS``.

    An unset path yields no sites. A missing or invalid file is a startup error.
    """
    path = path if path is not None else settings.SITE_DESCRIPTORS
    if not path:
        logger.warning("SITE_DESCRIPTORS not set, no sites will be searched")
        return []

    file_path = Path(path)
    try:
        raw = file_path.read_text(encoding="utf-8")
    except OSError as e:
        raise SiteConfigurationError(f"Cannot read site descriptor file {file_path}: {e}")

    hosts = settings.allowed_video_hosts if allowed_hosts is None else allowed_hosts
    sites = parse_site_descriptors(raw, hosts)
    logger.info("Loaded site descriptors", path=str(file_path), sites=[site.name for site in sites])
    return sites
