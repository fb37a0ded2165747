"""Video discovery."""
from .site_scraper import SiteScraper, candidate_id
from .sites import SiteDescriptor, SiteSelectors, load_site_descriptors, parse_site_descriptors

__all__ = [
    "SiteScraper",
    "candidate_id",
    "SiteDescriptor",
    "SiteSelectors",
    "load_site_descriptors",
    "parse_site_descriptors",
]
