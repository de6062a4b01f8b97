"""
conftest.py: shared pytest fixtures
Adds the repository root to sys.path so `pagegrade.*` imports resolve correctly
regardless of where pytest is invoked from.
"""

import sys
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parent.parent
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from typing import Optional

import pytest
from bs4 import BeautifulSoup
from unittest.mock import MagicMock

from pagegrade.models import (
    AnalysisContext, GeoLookupResult, HtmlDocument, LinkSampleSummary,
    SitemapFetch, SitemapSummary, Strategy,
)
from pagegrade.services.fetchers import clear_caches


@pytest.fixture(autouse=True)
def _fresh_caches():
    clear_caches()
    yield
    clear_caches()


@pytest.fixture
def safe_url():
    return "https://example.com"


@pytest.fixture
def session():
    """Stand-in for aiohttp.ClientSession; every network call is patched at the call site."""
    return MagicMock()


def make_psi(perf: float = 0.9, lcp: float = 1800, cls: float = 0.05, inp: float = 150, tbt: float = 100) -> dict:
    return {
        "lighthouseResult": {
            "categories": {"performance": {"score": perf}},
            "audits": {
                "largest-contentful-paint": {"numericValue": lcp},
                "cumulative-layout-shift": {"numericValue": cls},
                "interaction-to-next-paint": {"numericValue": inp},
                "total-blocking-time": {"numericValue": tbt},
            },
        }
    }


def reachable_sitemap(url: str = "https://example.com/sitemap.xml", has_hreflang: bool = False) -> SitemapSummary:
    return SitemapSummary(
        urls=[url],
        fetched=[SitemapFetch(url=url, ok=True, status_code=200)],
        has_hreflang=has_hreflang,
    )


def make_context(
    html: str = "<html><head><title>Example Domain</title></head><body></body></html>",
    url: str = "https://example.com",
    headers: Optional[dict] = None,
    psi: Optional[dict] = None,
    locale: str = "en_US",
    sitemap: Optional[SitemapSummary] = None,
    geo: Optional[GeoLookupResult] = None,
    link_sample: Optional[LinkSampleSummary] = None,
) -> AnalysisContext:
    return AnalysisContext(
        url=url,
        normalized_url=url,
        locale=locale,
        target_country=locale.split("_")[-1] if "_" in locale else None,
        strategy=Strategy.MOBILE,
        psi=psi if psi is not None else make_psi(),
        html=html,
        soup=BeautifulSoup(html, "lxml"),
        headers=headers or {"content-type": "text/html; charset=utf-8"},
        sitemap=sitemap,
        geo=geo,
        link_sample=link_sample or LinkSampleSummary(),
    )


def make_document(html: str, url: str = "https://example.com", headers: Optional[dict] = None) -> HtmlDocument:
    return HtmlDocument(
        html=html,
        status_code=200,
        headers=headers or {"content-type": "text/html; charset=utf-8"},
        final_url=url,
        soup=BeautifulSoup(html, "lxml"),
        content_type="text/html; charset=utf-8",
    )
