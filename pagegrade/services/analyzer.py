"""
pagegrade/services/analyzer.py
Orchestrates a full audit of one URL:
  init → primary fetches (PSI, HTML, robots.txt) → secondary fetches on the final
  origin (sitemap, geo, link sample) → eight scoring modules → weighted overall.

The whole pipeline runs under a child CancellationToken that is cancelled either
by the caller's token or by the deadline timer.
"""
import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import List, Optional, Union
from urllib.parse import urlparse

import aiohttp
from bs4 import BeautifulSoup

from ..config import get_settings
from ..exceptions import AnalysisTimeoutError
from ..models import (
    AnalysisContext, AnalysisResult, GeoLookupResult, HistorySnapshot,
    LinkSampleSummary, RawPayloads, SitemapSummary, Strategy,
)
from ..utils.cancellation import CancellationToken
from ..utils.history import HistoryStore
from ..utils.urls import derive_country_from_locale, normalize_audit_url, origin_of
from .fetchers import create_session, fetch_html_document, fetch_psi, fetch_robots_txt, fetch_sitemaps
from .geo import lookup_geo
from .link_sampler import evaluate_link_sample
from .modules import build_module_results
from .score_calculator import weighted_score

logger = logging.getLogger(__name__)
settings = get_settings()


def resolve_strategy(strategy: Union[str, Strategy, None]) -> Strategy:
    """Desktop only when explicitly requested, mobile otherwise."""
    value = strategy.value if isinstance(strategy, Strategy) else str(strategy or "")
    return Strategy.DESKTOP if value.strip().lower() == "desktop" else Strategy.MOBILE


def resolve_locale(locale: Optional[str]) -> str:
    return (locale or "").strip() or settings.default_locale


# ── Secondary fetches (each degrades to absent) ────────────────────────────────

async def _safe_sitemaps(session, origin, robots_txt, skip_cache, token) -> Optional[SitemapSummary]:
    try:
        return await fetch_sitemaps(session, origin, robots_txt, skip_cache=skip_cache, token=token)
    except Exception as e:
        token.raise_if_cancelled()
        logger.debug("Sitemap discovery failed for %s: %s", origin, e)
        return None


async def _safe_geo(session, hostname, skip_cache, token) -> Optional[GeoLookupResult]:
    try:
        return await lookup_geo(session, hostname, skip_cache=skip_cache, token=token)
    except Exception as e:
        token.raise_if_cancelled()
        logger.debug("Geo lookup failed for %s: %s", hostname, e)
        return None


async def _safe_link_sample(session, soup: BeautifulSoup, origin, token) -> LinkSampleSummary:
    try:
        return await evaluate_link_sample(session, soup, origin, token)
    except Exception as e:
        token.raise_if_cancelled()
        logger.debug("Link sampling failed for %s: %s", origin, e)
        return LinkSampleSummary()


async def _history_for(history: Optional[HistoryStore], url: str) -> List[HistorySnapshot]:
    if history is None:
        return []
    try:
        return list(await history.get_snapshots(url, settings.history_limit))
    except Exception as e:
        logger.warning("History lookup failed for %s: %s", url, e)
        return []


# ── Pipeline ───────────────────────────────────────────────────────────────────

async def _run_pipeline(
    session: aiohttp.ClientSession,
    normalized_url: str,
    strategy: Strategy,
    locale: str,
    target_country: Optional[str],
    skip_cache: bool,
    token: CancellationToken,
    history: Optional[HistoryStore],
    started_at: datetime,
    started: float,
) -> AnalysisResult:
    psi, document, robots = await asyncio.gather(
        fetch_psi(session, normalized_url, strategy, locale, skip_cache=skip_cache, token=token),
        fetch_html_document(session, normalized_url, skip_cache=skip_cache, token=token),
        fetch_robots_txt(session, normalized_url, skip_cache=skip_cache, token=token),
    )
    token.raise_if_cancelled()

    final_url = document.final_url or normalized_url
    origin = origin_of(final_url)
    sitemap, geo, link_sample = await asyncio.gather(
        _safe_sitemaps(session, origin, robots.text, skip_cache, token),
        _safe_geo(session, urlparse(final_url).hostname, skip_cache, token),
        _safe_link_sample(session, document.soup, origin, token),
    )
    token.raise_if_cancelled()

    ctx = AnalysisContext(
        url=final_url,
        normalized_url=normalized_url,
        locale=locale,
        target_country=target_country,
        strategy=strategy,
        psi=psi,
        html=document.html,
        soup=document.soup,
        headers=document.headers,
        robots_txt=robots.text,
        sitemap=sitemap,
        geo=geo,
        link_sample=link_sample,
    )

    modules = await build_module_results(ctx, session)
    token.raise_if_cancelled()
    overall = weighted_score(modules)
    snapshots = await _history_for(history, normalized_url)

    return AnalysisResult(
        ok=True,
        url=final_url,
        normalized_url=normalized_url,
        strategy=strategy,
        locale=locale,
        overall=overall,
        modules=modules,
        raw=RawPayloads(
            psi=psi,
            headers=document.headers,
            robots=robots.text,
            sitemap=sitemap,
            geo=geo,
            link_sample=link_sample,
        ),
        timing_ms=round((time.perf_counter() - started) * 1000, 2),
        started_at=started_at,
        finished_at=datetime.now(timezone.utc),
        history_snapshots=snapshots,
    )


async def analyze_site(
    url: str,
    strategy: Union[str, Strategy] = "mobile",
    locale: Optional[str] = None,
    skip_cache: bool = False,
    cancel_token: Optional[CancellationToken] = None,
    *,
    session: Optional[aiohttp.ClientSession] = None,
    history: Optional[HistoryStore] = None,
    timeout_seconds: Optional[float] = None,
) -> AnalysisResult:
    """
    Audit a single URL and return its AnalysisResult.

    Raises InvalidUrlError, UpstreamAuditError, HtmlFetchError (or
    NonHtmlContentError), AnalysisTimeoutError when the deadline passes, or
    the cancel_token's reason when the caller cancels.
    """
    normalized_url = normalize_audit_url(url)
    resolved_strategy = resolve_strategy(strategy)
    resolved_locale = resolve_locale(locale)
    target_country = derive_country_from_locale(resolved_locale)
    deadline = timeout_seconds if timeout_seconds is not None else settings.analysis_timeout_seconds

    started_at = datetime.now(timezone.utc)
    started = time.perf_counter()
    logger.info("Analysis started for %s (%s, %s)", normalized_url, resolved_strategy.value, resolved_locale)

    token = CancellationToken(parent=cancel_token)
    loop = asyncio.get_running_loop()
    timer = loop.call_later(
        deadline,
        token.cancel,
        AnalysisTimeoutError(f"Analysis timed out after {deadline}s"),
    )
    owns_session = session is None
    if owns_session:
        session = create_session()

    try:
        result = await token.guard(_run_pipeline(
            session,
            normalized_url,
            resolved_strategy,
            resolved_locale,
            target_country,
            skip_cache,
            token,
            history,
            started_at,
            started,
        ))
    except AnalysisTimeoutError:
        logger.warning("Analysis of %s timed out after %ss", normalized_url, deadline)
        raise
    except Exception:
        if token.cancelled:
            logger.warning("Analysis of %s cancelled: %s", normalized_url, token.reason)
        raise
    finally:
        timer.cancel()
        token.detach()
        if owns_session:
            await session.close()

    logger.info(
        "Analysis finished for %s: overall %.2f in %.0fms",
        normalized_url, result.overall, result.timing_ms,
    )
    return result
