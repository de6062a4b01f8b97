"""
pagegrade/services/fetchers.py
Typed accessors for the four external sources an analysis needs:
PageSpeed Insights, the page HTML, robots.txt and sitemap XML.

Every call is cached under a key covering all request parameters and runs
under the run's CancellationToken, so an aborted request never reaches the cache.
PSI and HTML failures raise; robots.txt and sitemap failures degrade to None.
"""
import asyncio
import logging
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urljoin

import aiohttp
from bs4 import BeautifulSoup
from lxml import etree

from ..config import get_settings
from ..exceptions import HtmlFetchError, NonHtmlContentError, UpstreamAuditError
from ..models import (
    HtmlDocument, RobotsResult, SitemapAlternate, SitemapEntry, SitemapFetch,
    SitemapSummary, Strategy,
)
from ..utils.cancellation import CancellationToken, run_guarded
from ..utils.urls import normalize_headers, origin_of, resolve_href
from .cache import TtlCache
from .geo import geo_cache

logger = logging.getLogger(__name__)
settings = get_settings()

HTML_ACCEPT = "text/html,application/xhtml+xml;q=0.9,*/*;q=0.8"
XML_ACCEPT = "application/xml,text/xml;q=0.9,*/*;q=0.8"

_psi_cache: TtlCache[Dict[str, Any]] = TtlCache(settings.cache_ttl_seconds)
_html_cache: TtlCache[HtmlDocument] = TtlCache(settings.cache_ttl_seconds)
_robots_cache: TtlCache[RobotsResult] = TtlCache(settings.cache_ttl_seconds)
_sitemap_cache: TtlCache[SitemapSummary] = TtlCache(settings.cache_ttl_seconds)

_xml_parser = etree.XMLParser(resolve_entities=False, no_network=True, huge_tree=False)


def create_session() -> aiohttp.ClientSession:
    return aiohttp.ClientSession(headers={"User-Agent": settings.user_agent})


def clear_caches() -> None:
    for cache in (_psi_cache, _html_cache, _robots_cache, _sitemap_cache, geo_cache):
        cache.clear()


def _raise_if_cancelled(token: Optional[CancellationToken]) -> None:
    if token is not None:
        token.raise_if_cancelled()


async def _get(session: aiohttp.ClientSession, url: str, timeout: float, accept: str) -> Tuple[int, bytes]:
    async with session.get(
        url,
        headers={"Accept": accept},
        timeout=aiohttp.ClientTimeout(total=timeout),
        allow_redirects=True,
    ) as resp:
        return resp.status, await resp.read()


# ── PageSpeed Insights ─────────────────────────────────────────────────────────

async def fetch_psi(
    session: aiohttp.ClientSession,
    url: str,
    strategy: Strategy,
    locale: str,
    skip_cache: bool = False,
    token: Optional[CancellationToken] = None,
) -> Dict[str, Any]:
    strategy = Strategy(strategy)
    cache_key = f"{strategy.value}:{locale}:{url}"
    if not skip_cache:
        cached = _psi_cache.get(cache_key)
        if cached is not None:
            return cached

    params: List[Tuple[str, str]] = [
        ("url", url),
        ("strategy", "DESKTOP" if strategy == Strategy.DESKTOP else "MOBILE"),
        ("locale", locale),
    ]
    params += [("category", c) for c in settings.psi_categories]
    if settings.psi_api_key and settings.psi_api_key.strip():
        params.append(("key", settings.psi_api_key.strip()))

    async def _request() -> Any:
        async with session.get(
            settings.psi_endpoint,
            params=params,
            timeout=aiohttp.ClientTimeout(total=settings.psi_timeout_seconds),
        ) as resp:
            if resp.status >= 400:
                body = await resp.text(errors="replace")
                raise UpstreamAuditError(f"PageSpeed Insights returned HTTP {resp.status}: {body[:200]}")
            return await resp.json(content_type=None)

    try:
        payload = await run_guarded(_request(), token)
    except asyncio.TimeoutError as e:
        _raise_if_cancelled(token)
        raise UpstreamAuditError(
            f"PageSpeed Insights timed out after {settings.psi_timeout_seconds}s"
        ) from e
    except (aiohttp.ClientError, ValueError) as e:
        _raise_if_cancelled(token)
        raise UpstreamAuditError(f"PageSpeed Insights request failed: {str(e)[:200]}") from e

    if not isinstance(payload, dict) or not payload.get("lighthouseResult"):
        raise UpstreamAuditError("PageSpeed Insights response did not include a Lighthouse result.")

    if not skip_cache:
        _psi_cache.set(cache_key, payload)
    return payload


# ── HTML document ──────────────────────────────────────────────────────────────

async def fetch_html_document(
    session: aiohttp.ClientSession,
    url: str,
    skip_cache: bool = False,
    token: Optional[CancellationToken] = None,
) -> HtmlDocument:
    cache_key = f"html:{url}"
    if not skip_cache:
        cached = _html_cache.get(cache_key)
        if cached is not None:
            return cached

    async def _request() -> Tuple[int, str, Dict[str, str], str, Optional[str]]:
        async with session.get(
            url,
            headers={"Accept": HTML_ACCEPT},
            timeout=aiohttp.ClientTimeout(total=settings.html_timeout_seconds),
            allow_redirects=True,
        ) as resp:
            if resp.status >= 400:
                raise HtmlFetchError(f"Unable to download HTML ({resp.status})", status_code=resp.status)
            content_type = resp.headers.get("Content-Type")
            if content_type and "text/html" not in content_type.lower():
                raise NonHtmlContentError(
                    f"Target URL did not return HTML (content-type: {content_type})",
                    content_type=content_type,
                )
            html = await resp.text(errors="replace")
            return resp.status, html, normalize_headers(resp.headers.items()), str(resp.url), content_type

    try:
        status, html, headers, final_url, content_type = await run_guarded(_request(), token)
    except asyncio.TimeoutError as e:
        _raise_if_cancelled(token)
        raise HtmlFetchError(f"Timed out downloading HTML after {settings.html_timeout_seconds}s") from e
    except aiohttp.ClientError as e:
        _raise_if_cancelled(token)
        raise HtmlFetchError(f"Unable to download HTML: {str(e)[:200]}") from e

    document = HtmlDocument(
        html=html,
        status_code=status,
        headers=headers,
        final_url=final_url or url,
        soup=BeautifulSoup(html, "lxml"),
        content_type=content_type,
    )
    if not skip_cache:
        _html_cache.set(cache_key, document)
    return document


# ── robots.txt ─────────────────────────────────────────────────────────────────

async def fetch_robots_txt(
    session: aiohttp.ClientSession,
    url: str,
    skip_cache: bool = False,
    token: Optional[CancellationToken] = None,
) -> RobotsResult:
    robots_url = urljoin(origin_of(url), "/robots.txt")
    if not skip_cache:
        cached = _robots_cache.get(robots_url)
        if cached is not None:
            return cached

    text: Optional[str] = None
    try:
        status, body = await run_guarded(
            _get(session, robots_url, settings.robots_timeout_seconds, "text/plain"), token
        )
        if status < 400:
            text = body.decode("utf-8", errors="replace").strip() or None
        else:
            logger.debug("robots.txt at %s answered HTTP %s", robots_url, status)
    except Exception as e:
        _raise_if_cancelled(token)
        logger.debug("robots.txt at %s unreachable: %s", robots_url, e)

    result = RobotsResult(text=text, fetched_from=robots_url)
    if not skip_cache:
        _robots_cache.set(robots_url, result)
    return result


# ── Sitemaps ───────────────────────────────────────────────────────────────────

def collect_sitemap_candidates(robots_txt: Optional[str], origin: str, limit: int = 3) -> List[str]:
    """Sitemap: directives from robots.txt (in order, de-duplicated), else /sitemap.xml."""
    candidates: List[str] = []
    for line in (robots_txt or "").splitlines():
        line = line.strip()
        if not line.lower().startswith("sitemap:"):
            continue
        absolute = resolve_href(line.split(":", 1)[1].strip(), origin + "/")
        if absolute and absolute not in candidates:
            candidates.append(absolute)

    if not candidates:
        candidates.append(urljoin(origin, "/sitemap.xml"))
    return candidates[:limit]


def _localname(el) -> Optional[str]:
    if not isinstance(el.tag, str):
        return None
    return etree.QName(el).localname


def parse_sitemap(xml: bytes) -> Tuple[List[SitemapEntry], bool]:
    """
    Parse a <urlset> or <sitemapindex> document, ignoring namespaces.
    Returns (entries, is_index). Raises ValueError for anything else.
    """
    try:
        root = etree.fromstring(xml, _xml_parser)
    except etree.XMLSyntaxError as e:
        raise ValueError(f"Invalid sitemap XML: {e}") from e
    if root is None:
        raise ValueError("Empty sitemap document")

    root_name = _localname(root)
    if root_name not in ("urlset", "sitemapindex"):
        raise ValueError(f"Unexpected sitemap root element <{root_name}>")
    is_index = root_name == "sitemapindex"
    item_name = "sitemap" if is_index else "url"

    entries: List[SitemapEntry] = []
    for node in root:
        if _localname(node) != item_name:
            continue
        loc, lastmod = None, None
        alternates: List[SitemapAlternate] = []
        for child in node:
            name = _localname(child)
            if name == "loc":
                loc = (child.text or "").strip() or None
            elif name == "lastmod":
                lastmod = (child.text or "").strip() or None
            elif name == "link":
                rel = (child.get("rel") or "").lower()
                hreflang, href = child.get("hreflang"), child.get("href")
                if rel == "alternate" and hreflang and href:
                    alternates.append(SitemapAlternate(hreflang=hreflang.lower(), href=href))
        if loc:
            entries.append(SitemapEntry(loc=loc, lastmod=lastmod, alternates=alternates))
    return entries, is_index


async def fetch_sitemaps(
    session: aiohttp.ClientSession,
    origin_url: str,
    robots_txt: Optional[str],
    skip_cache: bool = False,
    token: Optional[CancellationToken] = None,
) -> Optional[SitemapSummary]:
    origin = origin_of(origin_url)
    cache_key = f"sitemap:{origin}"
    if not skip_cache:
        cached = _sitemap_cache.get(cache_key)
        if cached is not None:
            return cached

    candidates = collect_sitemap_candidates(robots_txt, origin, settings.sitemap_candidate_limit)
    fetched: List[SitemapFetch] = []
    has_hreflang = False

    for sitemap_url in candidates:
        try:
            status, body = await run_guarded(
                _get(session, sitemap_url, settings.sitemap_timeout_seconds, XML_ACCEPT), token
            )
        except Exception as e:
            _raise_if_cancelled(token)
            logger.debug("Sitemap %s unreachable: %s", sitemap_url, e)
            fetched.append(SitemapFetch(url=sitemap_url, ok=False))
            continue

        if status >= 400 or not body:
            fetched.append(SitemapFetch(url=sitemap_url, ok=False, status_code=status))
            continue

        try:
            entries, is_index = parse_sitemap(body)
        except ValueError as e:
            logger.debug("Sitemap %s did not parse: %s", sitemap_url, e)
            fetched.append(SitemapFetch(url=sitemap_url, ok=False, status_code=status))
            continue

        if any(entry.alternates for entry in entries):
            has_hreflang = True
        fetched.append(SitemapFetch(
            url=sitemap_url,
            ok=True,
            status_code=status,
            is_index=is_index,
            entries=entries[:settings.sitemap_entry_limit],
        ))
        # first successful sitemap is enough
        break

    summary = SitemapSummary(urls=candidates, fetched=fetched, has_hreflang=has_hreflang) if fetched else None
    if not skip_cache and summary is not None:
        _sitemap_cache.set(cache_key, summary)
    return summary
