"""
Technical detector tests.
"""
import json

import pytest
from bs4 import BeautifulSoup
from unittest.mock import AsyncMock, MagicMock, patch

from conftest import make_document
from pagegrade.models import LinkSampleEntry, RobotsResult
from pagegrade.services import detectors
from pagegrade.services.detectors import (
    DetectorContext, detect_amp_link, detect_canonical, detect_duplicate_content,
    detect_external_link_health, detect_favicon, detect_geo_localization, detect_mobile_viewport,
    detect_robots_meta, detect_robots_txt, detect_structured_data, extract_json_ld_payloads,
    parse_robots_txt, run_detectors, run_technical_detectors,
)


def make_ctx(html: str, url: str = "https://example.com/", robots_txt: str = None) -> DetectorContext:
    return DetectorContext(
        url=url,
        html=html,
        soup=BeautifulSoup(html, "lxml"),
        robots_txt=robots_txt,
        session=MagicMock(),
    )


def json_ld(*items) -> str:
    return "".join(f'<script type="application/ld+json">{json.dumps(item)}</script>' for item in items)


def summaries(bucket):
    return [issue.summary for issue in bucket]


# ─── Metadata ──────────────────────────────────────────────────────────────────

class TestMetadataDetectors:

    @pytest.mark.asyncio
    async def test_missing_favicon(self):
        probe = AsyncMock(return_value=LinkSampleEntry(url="x", status_code=404, ok=False))
        with patch.object(detectors, "probe_link", probe):
            result = await detect_favicon(make_ctx("<html></html>"))

        assert summaries(result.issues.critical) == ["No favicon declared"]
        assert summaries(result.issues.warnings) == ["favicon.ico not reachable"]
        assert result.checks["fallback_url"] == "https://example.com/favicon.ico"

    @pytest.mark.asyncio
    async def test_declared_favicon(self):
        probe = AsyncMock(return_value=LinkSampleEntry(url="x", status_code=404, ok=False))
        html = '<html><head><link rel="shortcut icon" href="/fav.png"></head></html>'
        with patch.object(detectors, "probe_link", probe):
            result = await detect_favicon(make_ctx(html))

        assert result.issues.critical == []
        assert result.issues.warnings == []
        assert result.checks["declared_icons"][0]["href"] == "https://example.com/fav.png"

    @pytest.mark.asyncio
    async def test_missing_canonical(self):
        result = await detect_canonical(make_ctx("<html></html>"))
        assert summaries(result.issues.warnings) == ["Missing canonical tag"]

    @pytest.mark.asyncio
    async def test_matching_canonical_ignores_trailing_slash(self):
        html = '<html><head><link rel="canonical" href="https://example.com"></head></html>'
        result = await detect_canonical(make_ctx(html))
        assert result.issues.warnings == []

    @pytest.mark.asyncio
    async def test_mismatched_canonical(self):
        html = '<html><head><link rel="canonical" href="/other"></head></html>'
        result = await detect_canonical(make_ctx(html))
        assert summaries(result.issues.warnings) == ["Canonical URL does not match crawled URL"]

    @pytest.mark.asyncio
    async def test_robots_meta(self):
        html = '<html><head><meta name="ROBOTS" content="NoIndex; nofollow"></head></html>'
        result = await detect_robots_meta(make_ctx(html))
        assert result.checks["directives"] == ["noindex", "nofollow"]
        assert len(result.issues.critical) == 1
        assert len(result.issues.warnings) == 1


# ─── robots.txt ────────────────────────────────────────────────────────────────

class TestRobotsTxt:

    def test_parse_groups_rules_by_agent(self):
        parsed = parse_robots_txt(
            "User-agent: *\nDisallow: /private # secret\nAllow: /public\n\n"
            "User-agent: Googlebot\nDisallow:\nSitemap: https://example.com/sitemap.xml\n"
        )
        assert parsed["user_agents"]["*"] == {"allow": ["/public"], "disallow": ["/private"]}
        assert parsed["user_agents"]["googlebot"] == {"allow": [], "disallow": []}
        assert parsed["sitemaps"] == ["https://example.com/sitemap.xml"]

    @pytest.mark.asyncio
    async def test_missing_robots(self):
        result = await detect_robots_txt(make_ctx("<html></html>"))
        assert result.checks == {"reachable": False}
        assert summaries(result.issues.warnings) == ["robots.txt missing or not reachable"]

    @pytest.mark.asyncio
    async def test_blocks_everything(self):
        result = await detect_robots_txt(make_ctx("<html></html>", robots_txt="User-agent: *\nDisallow: /"))
        assert summaries(result.issues.critical) == ["robots.txt blocks all crawling"]
        assert summaries(result.issues.improvements) == ["No sitemap declared in robots.txt"]


# ─── Mobile ────────────────────────────────────────────────────────────────────

class TestMobileDetectors:

    @pytest.mark.asyncio
    async def test_amp_not_detected(self):
        result = await detect_amp_link(make_ctx("<html></html>"))
        assert summaries(result.issues.improvements) == ["AMP version not detected"]

    @pytest.mark.asyncio
    async def test_amp_link(self):
        html = '<html><head><link rel="amphtml" href="/amp"></head></html>'
        result = await detect_amp_link(make_ctx(html))
        assert result.checks["amp_href"] == "https://example.com/amp"
        assert result.issues.improvements == []

    @pytest.mark.asyncio
    async def test_viewport_missing(self):
        result = await detect_mobile_viewport(make_ctx("<html></html>"))
        assert summaries(result.issues.critical) == ["Viewport meta missing"]

    @pytest.mark.asyncio
    async def test_viewport_incomplete(self):
        html = '<html><head><meta name="viewport" content="width=1024"></head></html>'
        result = await detect_mobile_viewport(make_ctx(html))
        assert summaries(result.issues.warnings) == ["Viewport missing width=device-width"]
        assert summaries(result.issues.improvements) == ["Viewport missing initial-scale=1"]


# ─── External links ────────────────────────────────────────────────────────────

class TestExternalLinkHealth:

    @pytest.mark.asyncio
    async def test_failures_bucketed_by_status(self):
        html = (
            '<a href="/internal">in</a>'
            '<a href="https://example.com:443/also-internal">in</a>'
            '<a href="mailto:hi@example.com">mail</a>'
            '<a href="#top">top</a>'
            '<a href="https://ok.example.org/">ok</a>'
            '<a href="https://gone.example.org/#a">gone</a>'
            '<a href="https://gone.example.org/#b">gone again</a>'
            '<a href="https://down.example.org/">down</a>'
            '<a href="https://dead.example.org/">dead</a>'
        )
        statuses = {
            "https://ok.example.org/": 200,
            "https://gone.example.org/": 404,
            "https://down.example.org/": 503,
            "https://dead.example.org/": None,
        }

        async def probe(session, url, timeout=None):
            status = statuses[url]
            return LinkSampleEntry(url=url, status_code=status, ok=bool(status and status < 400))

        with patch.object(detectors, "probe_link", probe):
            result = await detect_external_link_health(make_ctx(f"<html><body>{html}</body></html>"))

        assert result.module == "links_navigation"
        assert [link["url"] for link in result.checks["sampled_links"]] == list(statuses)
        assert summaries(result.issues.warnings) == ["External link fails with status 404"]
        assert summaries(result.issues.critical) == [
            "External link fails with status 503",
            "External link fails with status N/A",
        ]

    @pytest.mark.asyncio
    async def test_at_most_ten_links_probed(self):
        html = "".join(f'<a href="https://site{i}.example.org/">s</a>' for i in range(15))
        probe = AsyncMock(side_effect=lambda session, url: LinkSampleEntry(url=url, status_code=200, ok=True))

        with patch.object(detectors, "probe_link", probe):
            result = await detect_external_link_health(make_ctx(f"<html><body>{html}</body></html>"))

        assert probe.await_count == 10
        assert len(result.checks["sampled_links"]) == 10
        assert result.issues.critical == []


# ─── Geo / localization ────────────────────────────────────────────────────────

class TestGeoLocalization:

    @pytest.mark.asyncio
    async def test_bare_page(self):
        result = await detect_geo_localization(make_ctx("<html><body></body></html>"))

        assert result.module == "geo_localization"
        assert summaries(result.issues.improvements) == [
            "LocalBusiness schema not detected",
            "PostalAddress schema missing",
            "Google Business Profile link not detected",
        ]
        assert summaries(result.issues.warnings) == [
            "Geo coordinates not found in schema",
            "<html lang> attribute missing",
        ]

    @pytest.mark.asyncio
    async def test_complete_local_business(self):
        business = {
            "@context": "https://schema.org",
            "@type": "LocalBusiness",
            "@id": "#shop",
            "name": "Example Bakery",
            "address": {
                "@type": "PostalAddress",
                "streetAddress": "1 Main St",
                "addressLocality": "Springfield",
                "addressCountry": {"@type": "Country", "name": "US"},
            },
            "geo": {"@type": "GeoCoordinates", "latitude": "40.1", "longitude": -75.5},
            "sameAs": ["https://www.google.com/maps/place/example-bakery"],
        }
        html = (
            f'<html lang="en_US"><head>{json_ld(business)}'
            '<link rel="alternate" hreflang="en-us" href="https://example.com/">'
            '<link rel="alternate" hreflang="de-de" href="https://example.com/de/">'
            "</head><body></body></html>"
        )
        result = await detect_geo_localization(make_ctx(html))

        assert result.issues.critical == []
        assert result.issues.warnings == []
        assert result.issues.improvements == []
        assert result.checks["geo_coordinates"] == [{"latitude": 40.1, "longitude": -75.5, "source_id": "#shop"}]
        assert result.checks["postal_addresses"][0]["address_country"] == "US"
        assert result.checks["google_business_links"] == ["https://www.google.com/maps/place/example-bakery"]
        assert result.checks["html_lang"] == "en-us"
        assert result.checks["lang_parity"] == {"has_hreflang": True, "has_exact_match": True, "has_base_match": True}

    @pytest.mark.parametrize("lang, hreflang, severity, summary", [
        ("en", None, "improvements", "hreflang references missing"),
        ("fr", "en-us", "warnings", "hreflang values do not match <html lang>"),
        ("en-GB", "en-us", "improvements", "Exact hreflang for <html lang> missing"),
    ])
    @pytest.mark.asyncio
    async def test_lang_parity_ladder(self, lang, hreflang, severity, summary):
        alternate = f'<link rel="alternate" hreflang="{hreflang}" href="/x">' if hreflang else ""
        html = f'<html lang="{lang}"><head>{alternate}</head><body><a href="https://g.page/shop">map</a></body></html>'
        result = await detect_geo_localization(make_ctx(html))

        assert summary in summaries(getattr(result.issues, severity))
        assert "Google Business Profile link not detected" not in summaries(result.issues.improvements)


# ─── Structured data ───────────────────────────────────────────────────────────

class TestStructuredDataDetector:

    @pytest.mark.asyncio
    async def test_no_json_ld(self):
        result = await detect_structured_data(make_ctx("<html></html>"))
        assert summaries(result.issues.warnings) == ["WebSite schema not detected", "WebPage schema not detected"]
        assert summaries(result.issues.improvements) == ["FAQPage schema not detected", "BreadcrumbList schema missing"]
        assert result.checks["rich_results_preview_url"] == (
            "https://search.google.com/test/rich-results?url=https%3A%2F%2Fexample.com%2F"
        )

    @pytest.mark.asyncio
    async def test_complete_markup(self):
        website = {
            "@context": "https://schema.org",
            "@type": "WebSite",
            "potentialAction": {
                "@type": "SearchAction",
                "target": {"urlTemplate": "https://example.com/search?q={search_term_string}"},
                "query-input": "required name=search_term_string",
            },
        }
        graph = {
            "@context": "https://schema.org",
            "@graph": [
                {"@type": "WebPage", "name": "Home"},
                {"@type": "BreadcrumbList", "itemListElement": []},
                {"@type": "FAQPage", "mainEntity": [{"@type": "Question", "name": "Q?", "acceptedAnswer": {}}]},
            ],
        }
        result = await detect_structured_data(make_ctx(f"<html><head>{json_ld(website, graph)}</head></html>"))

        assert result.checks["has_website_search_action"] is True
        assert result.issues.warnings == []
        assert result.issues.improvements == []

    @pytest.mark.asyncio
    async def test_invalid_faq_and_missing_search_action(self):
        items = [{"@type": "WebSite"}, {"@type": "FAQPage", "mainEntity": {"name": "only one"}}]
        result = await detect_structured_data(make_ctx(f"<html><head>{json_ld(*items)}</head></html>"))

        assert "Some FAQPage schemas lack valid questions/answers" in summaries(result.issues.warnings)
        assert "WebSite schema missing SearchAction" in summaries(result.issues.improvements)

    def test_back_to_back_objects_are_repaired(self):
        html = '<script type="application/ld+json">{"@type": "WebSite"} {"@type": "WebPage"}</script>'
        payloads = extract_json_ld_payloads(BeautifulSoup(html, "lxml"))
        assert payloads == [[{"@type": "WebSite"}, {"@type": "WebPage"}]]


# ─── Duplicate content ─────────────────────────────────────────────────────────

class TestDuplicateContent:

    @pytest.mark.asyncio
    async def test_three_copies_escalate_to_warning(self):
        duplicate = " ".join(f"dup{j}" for j in range(30))
        distinct = [" ".join(f"w{i}x{j}" for j in range(30)) for i in range(38)]
        html = "<body>" + "".join(f"<p>{t}</p>" for t in [duplicate] * 3 + distinct) + "</body>"

        result = await detect_duplicate_content(make_ctx(html))

        assert len(result.checks["duplicates"]) == 3
        assert summaries(result.issues.warnings) == ["Multiple sections of the page appear near-identical"]
        assert result.issues.improvements == []
        assert len(result.checks["samples"]) == 5

    @pytest.mark.asyncio
    async def test_single_pair_is_improvement(self):
        duplicate = " ".join(f"dup{j}" for j in range(30))
        other = " ".join(f"other{j}" for j in range(30))
        html = f"<body><p>{duplicate}</p><p>{duplicate}</p><p>{other}</p></body>"

        result = await detect_duplicate_content(make_ctx(html))

        assert summaries(result.issues.improvements) == ["Some sections repeat similar content"]
        assert result.issues.warnings == []

    @pytest.mark.asyncio
    async def test_short_blocks_ignored(self):
        result = await detect_duplicate_content(make_ctx("<p>tiny</p><p>tiny</p>"))
        assert result.checks["fingerprint_count"] == 0
        assert result.checks["duplicates"] == []


# ─── Runner ────────────────────────────────────────────────────────────────────

class TestRunDetectors:

    @pytest.mark.asyncio
    async def test_failing_detector_becomes_internal_error(self):
        async def broken(ctx):
            raise KeyError("missing")

        results = await run_detectors(make_ctx("<html></html>"), [detect_canonical, broken, detect_amp_link])

        assert [r.module for r in results] == ["metadata", "internal_error", "amp_mobile"]
        assert results[1].checks == {"detector": "broken"}
        assert summaries(results[1].issues.critical) == ["Detector failed"]

    @pytest.mark.asyncio
    async def test_run_technical_detectors(self):
        document = make_document("<html><head><title>t</title></head></html>", url="https://example.com/")
        robots = RobotsResult(text="User-agent: *\nAllow: /", fetched_from="https://example.com/robots.txt")
        probe = AsyncMock(return_value=LinkSampleEntry(url="x", status_code=200, ok=True))

        with patch.object(detectors, "fetch_html_document", AsyncMock(return_value=document)), \
                patch.object(detectors, "fetch_robots_txt", AsyncMock(return_value=robots)), \
                patch.object(detectors, "probe_link", probe):
            results = await run_technical_detectors("example.com", session=MagicMock())

        assert len(results) == len(detectors.DETECTORS)
        assert "internal_error" not in [r.module for r in results]
        assert [r.module for r in results] == [
            "metadata", "metadata", "metadata", "sitemap_indexing", "amp_mobile", "performance",
            "links_navigation", "geo_localization", "schema_structured", "duplicate_content",
        ]
