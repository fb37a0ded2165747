"""Tests for site descriptor loading."""
import json

import pytest

from facesearch.core.exceptions import SiteConfigurationError
from facesearch.services.scraping.sites import load_site_descriptors, parse_site_descriptors

ALLOWED = ["example.com"]


def descriptor(**overrides):
    entry = {
        "name": "Example",
        "baseUrl": "https://videos.example.com/latest",
        "maxVideos": 20,
        "selectors": {"container": ".item", "title": "h3", "thumbnail": "img", "link": "a"},
    }
    entry.update(overrides)
    return entry


class TestParseSiteDescriptors:
    """Validation of the descriptor document."""

    def test_valid(self):
        sites = parse_site_descriptors(json.dumps([descriptor()]), ALLOWED)

        assert len(sites) == 1
        assert sites[0].name == "Example"
        assert sites[0].max_videos == 20
        assert sites[0].host == "videos.example.com"
        assert sites[0].selectors.container == ".item"

    def test_not_json(self):
        with pytest.raises(SiteConfigurationError):
            parse_site_descriptors("{not json", ALLOWED)

    def test_not_an_array(self):
        with pytest.raises(SiteConfigurationError):
            parse_site_descriptors(json.dumps(descriptor()), ALLOWED)

    @pytest.mark.parametrize(
        "overrides",
        [
            {"maxVideos": 0},
            {"maxVideos": 101},
            {"baseUrl": "ftp://example.com/"},
            {"selectors": {"container": "", "title": "h3", "thumbnail": "img", "link": "a"}},
            {"name": ""},
        ],
    )
    def test_invalid_entry(self, overrides):
        with pytest.raises(SiteConfigurationError):
            parse_site_descriptors(json.dumps([descriptor(**overrides)]), ALLOWED)

    @pytest.mark.parametrize("selector", ["div[", "a >", "..item", "p:bogus-pseudo"])
    def test_invalid_css_selector(self, selector):
        selectors = {"container": ".item", "title": "h3", "thumbnail": selector, "link": "a"}

        with pytest.raises(SiteConfigurationError) as exc_info:
            parse_site_descriptors(json.dumps([descriptor(selectors=selectors)]), ALLOWED)

        assert "invalid CSS selector" in str(exc_info.value)

    def test_complex_selectors_accepted(self):
        selectors = {
            "container": "div.grid > article[data-kind='video']",
            "title": "h3 a, .title",
            "thumbnail": "img:not(.placeholder)",
            "link": "a[href^='/watch']",
        }
        sites = parse_site_descriptors(json.dumps([descriptor(selectors=selectors)]), ALLOWED)
        assert sites[0].selectors.link == "a[href^='/watch']"

    def test_host_outside_allowlist(self):
        with pytest.raises(SiteConfigurationError):
            parse_site_descriptors(json.dumps([descriptor(baseUrl="https://other.net/")]), ALLOWED)

    def test_duplicate_names(self):
        with pytest.raises(SiteConfigurationError):
            parse_site_descriptors(json.dumps([descriptor(), descriptor()]), ALLOWED)


class TestLoadSiteDescriptors:
    def test_unset_path_means_no_sites(self):
        assert load_site_descriptors(path="", allowed_hosts=ALLOWED) == []

    def test_reads_file(self, tmp_path):
        path = tmp_path / "sites.json"
        path.write_text(json.dumps([descriptor()]), encoding="utf-8")

        sites = load_site_descriptors(str(path), allowed_hosts=ALLOWED)
        assert [site.name for site in sites] == ["Example"]

    def test_missing_file(self, tmp_path):
        with pytest.raises(SiteConfigurationError):
            load_site_descriptors(str(tmp_path / "missing.json"), allowed_hosts=ALLOWED)
