"""
pagegrade/services/link_sampler.py
Samples same-origin links from the page and HEAD-probes them with bounded concurrency.
"""
import asyncio
import logging
from typing import List, Optional, Tuple
from urllib.parse import urldefrag

import aiohttp
from bs4 import BeautifulSoup

from ..config import get_settings
from ..models import LinkSampleEntry, LinkSampleSummary
from ..utils.cancellation import CancellationToken
from ..utils.pool import bounded_map
from ..utils.urls import resolve_href, same_origin, should_skip_href

logger = logging.getLogger(__name__)
settings = get_settings()


def _rel_of(tag) -> Optional[str]:
    # bs4 parses rel as a multi-valued attribute
    rel = tag.get("rel")
    if rel is None:
        return None
    return " ".join(rel) if isinstance(rel, list) else str(rel)


def collect_link_candidates(
    soup: BeautifulSoup, origin_url: str, limit: int = 50
) -> List[Tuple[str, Optional[str]]]:
    """Same-origin (url, rel) pairs in document order, fragment-free and de-duplicated, at most `limit`."""
    seen = set()
    candidates: List[Tuple[str, Optional[str]]] = []
    for tag in soup.find_all("a", href=True):
        if len(candidates) >= limit:
            break
        href = tag["href"].strip()
        if not href or should_skip_href(href):
            continue
        absolute = resolve_href(href, origin_url)
        if absolute:
            absolute = urldefrag(absolute).url
        if not absolute or not same_origin(absolute, origin_url):
            continue
        if absolute in seen:
            continue
        seen.add(absolute)
        candidates.append((absolute, _rel_of(tag)))
    return candidates


async def probe_link(
    session: aiohttp.ClientSession, url: str, timeout: Optional[float] = None
) -> LinkSampleEntry:
    """HEAD request; ok iff a status code below 400 came back."""
    try:
        async with session.head(
            url,
            timeout=aiohttp.ClientTimeout(total=timeout or settings.head_timeout_seconds),
            allow_redirects=True,
        ) as resp:
            status = resp.status
    except asyncio.TimeoutError:
        return LinkSampleEntry(url=url, status_code=None, ok=False)
    except Exception as e:
        logger.debug("Probe of %s failed: %s", url, e)
        return LinkSampleEntry(url=url, status_code=None, ok=False)
    return LinkSampleEntry(url=url, status_code=status, ok=bool(status and status < 400))


async def evaluate_link_sample(
    session: aiohttp.ClientSession,
    soup: BeautifulSoup,
    origin_url: str,
    token: Optional[CancellationToken] = None,
) -> LinkSampleSummary:
    candidates = collect_link_candidates(soup, origin_url, settings.link_sample_limit)

    async def check_one(candidate: Tuple[str, Optional[str]]) -> LinkSampleEntry:
        url, rel = candidate
        entry = await probe_link(session, url)
        return entry.model_copy(update={"rel": rel})

    checked = await bounded_map(candidates, check_one, settings.link_concurrency, token)
    if token is not None:
        token.raise_if_cancelled()

    nofollow = sum(1 for _, rel in candidates if rel and "nofollow" in rel.lower())
    return LinkSampleSummary(
        total=len(candidates),
        checked=checked,
        broken=[e for e in checked if not e.ok],
        nofollow=nofollow,
    )
