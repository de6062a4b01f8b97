"""
pagegrade/services/detectors.py
Technical SEO detectors run against a single page:
  1. Favicon
  2. Canonical tag
  3. Robots meta
  4. robots.txt rules
  5. AMP link
  6. Mobile viewport
  7. External link health (HEAD probes of up to 10 cross-origin links)
  8. Geo / localization (LocalBusiness, PostalAddress, coordinates, Maps links, lang vs hreflang)
  9. JSON-LD structured data (FAQPage, BreadcrumbList, WebSite, WebPage)
 10. Duplicate content (SimHash)

Each detector returns a DetectorResult with its checks and issues bucketed into
critical / warnings / improvements. A detector that raises is reported as an
"internal_error" result instead of aborting the run.
"""
import asyncio
import json
import logging
import math
import re
from typing import Any, Awaitable, Callable, Dict, List, Optional
from urllib.parse import quote, urldefrag, urljoin

import aiohttp
from bs4 import BeautifulSoup
from pydantic import BaseModel, ConfigDict

from ..models import DetectorIssue, DetectorResult, IssueBuckets
from ..utils.urls import normalize_audit_url, origin_of, resolve_href, same_origin, should_skip_href
from .fetchers import create_session, fetch_html_document, fetch_robots_txt
from .link_sampler import probe_link
from .simhash import DUPLICATE_THRESHOLD, extract_text_blocks, find_near_duplicates, fingerprint_blocks

logger = logging.getLogger(__name__)

RICH_RESULTS_TEST_URL = "https://search.google.com/test/rich-results?url="
EXTERNAL_LINK_LIMIT = 10
GOOGLE_BUSINESS_PATTERNS = [re.compile(p, re.I) for p in (r"google\.com/maps", r"goo\.gl/maps", r"g\.page")]


class DetectorContext(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    url: str
    html: str
    soup: BeautifulSoup
    robots_txt: Optional[str] = None
    session: Any  # aiohttp.ClientSession


Detector = Callable[[DetectorContext], Awaitable[DetectorResult]]


def _issue(buckets: IssueBuckets, severity: str, summary: str, **details) -> None:
    getattr(buckets, severity).append(DetectorIssue(summary=summary, details=details))


def _rel_tokens(tag) -> List[str]:
    rel = tag.get("rel") or []
    if isinstance(rel, str):
        rel = rel.split()
    return [r.lower() for r in rel]


def _find_meta(soup: BeautifulSoup, name: str):
    return soup.find("meta", attrs={"name": re.compile(rf"^{re.escape(name)}$", re.I)})


# ── JSON-LD helpers ────────────────────────────────────────────────────────────

def extract_json_ld_payloads(soup: BeautifulSoup) -> List[Any]:
    """Parsed JSON-LD blocks; back-to-back objects without commas are repaired, anything else skipped."""
    payloads = []
    for script in soup.find_all("script", attrs={"type": "application/ld+json"}):
        text = (script.string or script.get_text() or "").strip()
        if not text:
            continue
        try:
            payloads.append(json.loads(text))
            continue
        except ValueError:
            pass
        repaired = re.sub(r"}\s*{", "},{", text)
        if not repaired.startswith("["):
            repaired = f"[{repaired}]"
        try:
            payloads.append(json.loads(repaired))
        except ValueError:
            logger.debug("Skipping malformed JSON-LD block")
    return payloads


def _walk_objects(value: Any, out: List[Dict]) -> None:
    if isinstance(value, list):
        for item in value:
            _walk_objects(item, out)
    elif isinstance(value, dict):
        out.append(value)
        for child in value.values():
            _walk_objects(child, out)


def _types_of(obj: Dict) -> List[str]:
    raw = obj.get("@type")
    if not raw:
        return []
    return [str(t).lower() for t in (raw if isinstance(raw, list) else [raw]) if t]


def collect_json_ld_by_type(payloads: List[Any], type_name: str) -> List[Dict]:
    objects: List[Dict] = []
    _walk_objects(payloads, objects)
    wanted = type_name.lower()
    return [obj for obj in objects if wanted in _types_of(obj)]


def _has_search_action(website: Dict) -> bool:
    actions = website.get("potentialAction")
    actions = actions if isinstance(actions, list) else [actions] if actions else []
    for action in actions:
        if not isinstance(action, dict) or "searchaction" not in _types_of(action):
            continue
        target = action.get("target")
        if isinstance(target, dict):
            target = target.get("urlTemplate")
        query_input = action.get("query-input") or action.get("queryInput")
        if (
            isinstance(target, str) and "{search_term_string}" in target
            and isinstance(query_input, str) and "required" in query_input
        ):
            return True
    return False


# ═══════════════════════════════════════════════════════════════════════════════
# DETECTORS
# ═══════════════════════════════════════════════════════════════════════════════

async def detect_favicon(ctx: DetectorContext) -> DetectorResult:
    buckets = IssueBuckets()
    icons = []
    for tag in ctx.soup.find_all("link"):
        rel = _rel_tokens(tag)
        if "icon" not in rel and "apple-touch-icon" not in rel:
            continue
        href = resolve_href(tag.get("href"), ctx.url)
        if href:
            icons.append({
                "href": href,
                "rel": " ".join(rel),
                "sizes": tag.get("sizes") or "",
                "type": tag.get("type") or "",
            })

    if not icons:
        _issue(buckets, "critical", "No favicon declared",
               recommendation='Add at least one <link rel="icon" ...> that points to a 32x32 or SVG icon.')

    fallback_url = urljoin(origin_of(ctx.url), "/favicon.ico")
    probe = await probe_link(ctx.session, fallback_url)
    if not probe.ok and not icons:
        _issue(buckets, "warnings", "favicon.ico not reachable",
               recommendation="Host a fallback favicon.ico at the site root to satisfy legacy agents.")

    return DetectorResult(
        module="metadata",
        checks={"declared_icons": icons, "fallback_url": fallback_url, "fallback_reachable": probe.ok},
        issues=buckets,
    )


async def detect_canonical(ctx: DetectorContext) -> DetectorResult:
    buckets = IssueBuckets()
    canonical = next((t for t in ctx.soup.find_all("link") if "canonical" in _rel_tokens(t)), None)
    canonical_href = resolve_href(canonical.get("href"), ctx.url) if canonical else None

    if not canonical_href:
        _issue(buckets, "warnings", "Missing canonical tag",
               recommendation='Add <link rel="canonical" href="..." /> within <head>.')
    elif canonical_href.rstrip("/") != ctx.url.rstrip("/"):
        _issue(buckets, "warnings", "Canonical URL does not match crawled URL",
               canonical_href=canonical_href, requested_url=ctx.url)

    return DetectorResult(module="metadata", checks={"canonical_href": canonical_href}, issues=buckets)


async def detect_robots_meta(ctx: DetectorContext) -> DetectorResult:
    buckets = IssueBuckets()
    meta = _find_meta(ctx.soup, "robots")
    content = (meta.get("content") or "") if meta else ""
    directives = [d.strip().lower() for d in re.split(r"[;,]", content) if d.strip()]

    if "noindex" in directives:
        _issue(buckets, "critical", "Robots meta is set to noindex",
               directives=directives,
               recommendation="Remove noindex unless the page must be excluded from search results.")
    if "nofollow" in directives:
        _issue(buckets, "warnings", "nofollow directive detected",
               directives=directives,
               recommendation="Ensure this is intentional as it blocks link equity from flowing outward.")

    return DetectorResult(
        module="metadata",
        checks={"has_meta_robots": meta is not None, "directives": directives},
        issues=buckets,
    )


def parse_robots_txt(text: str) -> Dict[str, Any]:
    """Group allow/disallow rules by (lower-cased) user-agent and collect Sitemap: lines."""
    user_agents: Dict[str, Dict[str, List[str]]] = {}
    sitemaps: List[str] = []
    current_agent = None

    for raw_line in text.splitlines():
        line = raw_line.split("#", 1)[0].strip()
        if ":" not in line:
            continue
        directive, value = (part.strip() for part in line.split(":", 1))
        if not directive or not value:
            continue
        directive = directive.lower()
        if directive == "user-agent":
            current_agent = value.lower()
            user_agents.setdefault(current_agent, {"allow": [], "disallow": []})
        elif directive in ("allow", "disallow"):
            if current_agent is not None:
                user_agents[current_agent][directive].append(value)
        elif directive == "sitemap":
            sitemaps.append(value)

    return {"user_agents": user_agents, "sitemaps": sitemaps}


async def detect_robots_txt(ctx: DetectorContext) -> DetectorResult:
    buckets = IssueBuckets()
    if not ctx.robots_txt:
        _issue(buckets, "warnings", "robots.txt missing or not reachable",
               recommendation="Provide a robots.txt file even if it is empty to clarify crawl policy.")
        return DetectorResult(module="sitemap_indexing", checks={"reachable": False}, issues=buckets)

    parsed = parse_robots_txt(ctx.robots_txt)
    universal = parsed["user_agents"].get("*")
    if universal and "/" in universal["disallow"]:
        _issue(buckets, "critical", "robots.txt blocks all crawling", directive="Disallow: /", user_agent="*")
    if not parsed["sitemaps"]:
        _issue(buckets, "improvements", "No sitemap declared in robots.txt",
               recommendation="Add Sitemap: https://example.com/sitemap.xml so crawlers can find it faster.")

    return DetectorResult(module="sitemap_indexing", checks={"reachable": True, **parsed}, issues=buckets)


async def detect_amp_link(ctx: DetectorContext) -> DetectorResult:
    buckets = IssueBuckets()
    amp_link = next((t for t in ctx.soup.find_all("link") if "amphtml" in _rel_tokens(t)), None)
    amp_href = resolve_href(amp_link.get("href"), ctx.url) if amp_link else None
    html_tag = ctx.soup.find("html")
    has_amp_attribute = bool(html_tag and (html_tag.has_attr("amp") or html_tag.has_attr("⚡")))

    if not has_amp_attribute and not amp_href:
        _issue(buckets, "improvements", "AMP version not detected",
               recommendation="Consider serving an AMP variant for news or content-heavy pages where applicable.")

    return DetectorResult(
        module="amp_mobile",
        checks={"has_amp_attribute": has_amp_attribute, "amp_href": amp_href},
        issues=buckets,
    )


async def detect_mobile_viewport(ctx: DetectorContext) -> DetectorResult:
    buckets = IssueBuckets()
    meta = _find_meta(ctx.soup, "viewport")
    content = (meta.get("content") or "") if meta else ""

    if meta is None:
        _issue(buckets, "critical", "Viewport meta missing",
               recommendation='Add <meta name="viewport" content="width=device-width, initial-scale=1" />.')
    else:
        if not re.search(r"width\s*=\s*device-width", content, re.I):
            _issue(buckets, "warnings", "Viewport missing width=device-width", viewport_content=content)
        if not re.search(r"initial-scale\s*=\s*1", content, re.I):
            _issue(buckets, "improvements", "Viewport missing initial-scale=1", viewport_content=content)

    return DetectorResult(
        module="performance",
        checks={"viewport_content": content or None, "has_viewport": meta is not None},
        issues=buckets,
    )


async def detect_external_link_health(ctx: DetectorContext) -> DetectorResult:
    buckets = IssueBuckets()
    seen = set()
    external_links: List[str] = []
    for anchor in ctx.soup.find_all("a", href=True):
        href = anchor["href"].strip()
        if not href or href.startswith("#") or should_skip_href(href):
            continue
        absolute = resolve_href(href, ctx.url)
        if not absolute or same_origin(absolute, ctx.url):
            continue
        normalized = urldefrag(absolute).url
        if normalized in seen:
            continue
        seen.add(normalized)
        external_links.append(normalized)
        if len(external_links) >= EXTERNAL_LINK_LIMIT:
            break

    probes = await asyncio.gather(*(probe_link(ctx.session, link) for link in external_links))
    for entry in probes:
        if entry.ok:
            continue
        severity = "critical" if entry.status_code is None or entry.status_code >= 500 else "warnings"
        _issue(buckets, severity, f"External link fails with status {entry.status_code or 'N/A'}",
               url=entry.url, status=entry.status_code)

    return DetectorResult(
        module="links_navigation",
        checks={"sampled_links": [entry.model_dump(exclude={"rel"}) for entry in probes]},
        issues=buckets,
    )


# ── Geo / localization helpers ─────────────────────────────────────────────────

def _as_dict(value: Any) -> Optional[Dict]:
    return value if isinstance(value, dict) else None


def _text(value: Any) -> Optional[str]:
    return value if isinstance(value, str) else None


def _address_fields(node: Dict) -> Dict[str, Optional[str]]:
    country = node.get("addressCountry")
    if isinstance(country, dict):
        country = country.get("name")
    return {
        "street_address": _text(node.get("streetAddress")),
        "address_locality": _text(node.get("addressLocality")),
        "address_region": _text(node.get("addressRegion")),
        "postal_code": _text(node.get("postalCode")),
        "address_country": _text(country),
    }


def _coordinate(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return None
    return parsed if math.isfinite(parsed) else None


def _is_google_business_link(link: str) -> bool:
    return any(pattern.search(link) for pattern in GOOGLE_BUSINESS_PATTERNS)


def _normalize_lang(value: Optional[str]) -> Optional[str]:
    if not value or not value.strip():
        return None
    return value.strip().lower().replace("_", "-")


async def detect_geo_localization(ctx: DetectorContext) -> DetectorResult:
    buckets = IssueBuckets()
    payloads = extract_json_ld_payloads(ctx.soup)

    geo_coordinates = []
    local_businesses = []
    for node in collect_json_ld_by_type(payloads, "LocalBusiness"):
        geo = _as_dict(node.get("geo")) or {}
        latitude, longitude = _coordinate(geo.get("latitude")), _coordinate(geo.get("longitude"))
        has_geo = latitude is not None or longitude is not None
        if has_geo:
            geo_coordinates.append({
                "latitude": latitude,
                "longitude": longitude,
                "source_id": node.get("@id") or node.get("name"),
            })
        same_as = node.get("sameAs")
        same_as = same_as if isinstance(same_as, list) else [same_as] if same_as else []
        address = _as_dict(node.get("address"))
        local_businesses.append({
            "id": node.get("@id"),
            "name": _text(node.get("name")),
            "url": _text(node.get("url")),
            "address": _address_fields(address) if address else None,
            "geo": {"latitude": latitude, "longitude": longitude} if has_geo else None,
            "same_as": [link for link in same_as if isinstance(link, str)],
        })

    postal_addresses = [_address_fields(node) for node in collect_json_ld_by_type(payloads, "PostalAddress")]

    google_links: List[str] = []
    anchor_links = [resolve_href(a.get("href"), ctx.url) for a in ctx.soup.find_all("a", href=True)]
    schema_links = [link for business in local_businesses for link in business["same_as"]]
    for link in anchor_links + schema_links:
        if link and _is_google_business_link(link) and link not in google_links:
            google_links.append(link)

    html_tag = ctx.soup.find("html")
    html_lang = _normalize_lang(html_tag.get("lang")) if html_tag else None
    hreflang_values: List[str] = []
    for tag in ctx.soup.find_all("link", hreflang=True):
        value = _normalize_lang(tag.get("hreflang"))
        if "alternate" in _rel_tokens(tag) and value and value not in hreflang_values:
            hreflang_values.append(value)

    base = html_lang.split("-")[0] if html_lang else None
    has_base_match = bool(base) and any(value.split("-")[0] == base for value in hreflang_values)
    has_exact_match = bool(html_lang) and html_lang in hreflang_values

    if not local_businesses:
        _issue(buckets, "improvements", "LocalBusiness schema not detected",
               recommendation="Add JSON-LD LocalBusiness markup with address, contact, and geo coordinates.")
    if not postal_addresses:
        _issue(buckets, "improvements", "PostalAddress schema missing",
               recommendation="Embed PostalAddress inside LocalBusiness or appropriate schema for GEO targeting.")
    if not geo_coordinates:
        _issue(buckets, "warnings", "Geo coordinates not found in schema",
               recommendation="Provide geo.latitude and geo.longitude to improve map visibility.")
    if not google_links:
        _issue(buckets, "improvements", "Google Business Profile link not detected",
               recommendation="Link to your Google Business Profile (Google Maps) from the page or schema.")

    if not html_lang:
        _issue(buckets, "warnings", "<html lang> attribute missing",
               recommendation='Set <html lang="en"> (or relevant locale) to aid hreflang validation.')
    elif not hreflang_values:
        _issue(buckets, "improvements", "hreflang references missing",
               recommendation='Add <link rel="alternate" hreflang="..." href="..."> for localized variants.')
    elif not has_base_match:
        _issue(buckets, "warnings", "hreflang values do not match <html lang>",
               html_lang=html_lang, hreflang_values=hreflang_values)
    elif not has_exact_match:
        _issue(buckets, "improvements", "Exact hreflang for <html lang> missing",
               html_lang=html_lang, hreflang_values=hreflang_values)

    return DetectorResult(
        module="geo_localization",
        checks={
            "local_business_schemas": local_businesses,
            "postal_addresses": postal_addresses,
            "geo_coordinates": geo_coordinates,
            "google_business_links": google_links,
            "html_lang": html_lang,
            "hreflang_values": hreflang_values,
            "lang_parity": {
                "has_hreflang": bool(hreflang_values),
                "has_exact_match": has_exact_match,
                "has_base_match": has_base_match,
            },
        },
        issues=buckets,
    )


async def detect_structured_data(ctx: DetectorContext) -> DetectorResult:
    buckets = IssueBuckets()
    payloads = extract_json_ld_payloads(ctx.soup)
    faq = collect_json_ld_by_type(payloads, "FAQPage")
    breadcrumbs = collect_json_ld_by_type(payloads, "BreadcrumbList")
    websites = collect_json_ld_by_type(payloads, "WebSite")
    webpages = collect_json_ld_by_type(payloads, "WebPage")

    if not faq:
        _issue(buckets, "improvements", "FAQPage schema not detected",
               recommendation="Add FAQPage JSON-LD when you provide Q&A style content to unlock FAQ rich results.")
    else:
        valid = [
            schema for schema in faq
            if isinstance(schema.get("mainEntity"), list) and all(
                isinstance(entity, dict) and "name" in entity and "acceptedAnswer" in entity
                for entity in schema["mainEntity"]
            )
        ]
        if len(valid) != len(faq):
            _issue(buckets, "warnings", "Some FAQPage schemas lack valid questions/answers",
                   total_faq_schemas=len(faq))

    if not breadcrumbs:
        _issue(buckets, "improvements", "BreadcrumbList schema missing",
               recommendation="Add BreadcrumbList JSON-LD to help Google understand navigation hierarchy.")

    has_search_action = any(_has_search_action(w) for w in websites)
    if not websites:
        _issue(buckets, "warnings", "WebSite schema not detected",
               recommendation="Include WebSite JSON-LD with SearchAction so sitelinks search box can appear in SERPs.")
    elif not has_search_action:
        _issue(buckets, "improvements", "WebSite schema missing SearchAction",
               recommendation="Define potentialAction SearchAction with target containing {search_term_string}.")

    if not webpages:
        _issue(buckets, "warnings", "WebPage schema not detected",
               recommendation="Declare WebPage JSON-LD describing the current page to reinforce context.")

    return DetectorResult(
        module="schema_structured",
        checks={
            "faq_count": len(faq),
            "breadcrumb_count": len(breadcrumbs),
            "website_count": len(websites),
            "webpage_count": len(webpages),
            "has_website_search_action": has_search_action,
            "rich_results_preview_url": RICH_RESULTS_TEST_URL + quote(ctx.url, safe=""),
        },
        issues=buckets,
    )


async def detect_duplicate_content(ctx: DetectorContext) -> DetectorResult:
    buckets = IssueBuckets()
    fingerprints = fingerprint_blocks(extract_text_blocks(ctx.soup))
    duplicates = find_near_duplicates(fingerprints, DUPLICATE_THRESHOLD)

    if len(duplicates) >= 3:
        _issue(buckets, "warnings", "Multiple sections of the page appear near-identical", duplicates=duplicates)
    elif duplicates:
        _issue(buckets, "improvements", "Some sections repeat similar content", duplicates=duplicates)

    return DetectorResult(
        module="duplicate_content",
        checks={
            "fingerprint_count": len(fingerprints),
            "duplicates": duplicates,
            "samples": [{**fp, "hash": format(fp["hash"], "016x")} for fp in fingerprints[:5]],
        },
        issues=buckets,
    )


DETECTORS: List[Detector] = [
    detect_favicon,
    detect_canonical,
    detect_robots_meta,
    detect_robots_txt,
    detect_amp_link,
    detect_mobile_viewport,
    detect_external_link_health,
    detect_geo_localization,
    detect_structured_data,
    detect_duplicate_content,
]


async def run_detectors(ctx: DetectorContext, detectors: Optional[List[Detector]] = None) -> List[DetectorResult]:
    """Run detectors one after another; failures become internal_error results."""
    results: List[DetectorResult] = []
    for detector in detectors or DETECTORS:
        try:
            results.append(await detector(ctx))
        except Exception as e:
            logger.exception("Detector %s failed for %s", detector.__name__, ctx.url)
            results.append(DetectorResult(
                module="internal_error",
                checks={"detector": detector.__name__},
                issues=IssueBuckets(critical=[DetectorIssue(summary="Detector failed", details={"message": str(e)})]),
            ))
    return results


async def run_technical_detectors(
    url: str,
    session: Optional[aiohttp.ClientSession] = None,
    skip_cache: bool = False,
) -> List[DetectorResult]:
    """Fetch the page and its robots.txt, then run every detector against them."""
    normalized_url = normalize_audit_url(url)
    owns_session = session is None
    if owns_session:
        session = create_session()
    try:
        document = await fetch_html_document(session, normalized_url, skip_cache=skip_cache)
        robots = await fetch_robots_txt(session, document.final_url or normalized_url, skip_cache=skip_cache)
        ctx = DetectorContext(
            url=document.final_url or normalized_url,
            html=document.html,
            soup=document.soup,
            robots_txt=robots.text,
            session=session,
        )
        return await run_detectors(ctx)
    finally:
        if owns_session:
            await session.close()
