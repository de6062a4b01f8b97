"""
pagegrade/services/geo.py
Coarse server geolocation via an IP-geolocation API (ip-api.com compatible).
Advisory only: every failure returns None.
"""
import logging
from typing import Optional
from urllib.parse import quote

import aiohttp

from ..config import get_settings
from ..models import GeoLookupResult
from ..utils.cancellation import CancellationToken, run_guarded
from .cache import TtlCache

logger = logging.getLogger(__name__)
settings = get_settings()

GEO_FIELDS = "status,message,country,countryCode,regionName,isp,query"

geo_cache: TtlCache[GeoLookupResult] = TtlCache(settings.cache_ttl_seconds)


async def lookup_geo(
    session: aiohttp.ClientSession,
    hostname: Optional[str],
    skip_cache: bool = False,
    token: Optional[CancellationToken] = None,
) -> Optional[GeoLookupResult]:
    if not hostname:
        return None
    cache_key = f"geo:{hostname.lower()}"
    if not skip_cache:
        cached = geo_cache.get(cache_key)
        if cached is not None:
            return cached

    endpoint = f"{settings.geo_api_base.rstrip('/')}/{quote(hostname, safe='')}"

    async def _request():
        async with session.get(
            endpoint,
            params={"fields": GEO_FIELDS},
            timeout=aiohttp.ClientTimeout(total=settings.geo_timeout_seconds),
        ) as resp:
            if resp.status >= 400:
                return None
            return await resp.json(content_type=None)

    try:
        payload = await run_guarded(_request(), token)
        result = GeoLookupResult.model_validate(payload) if isinstance(payload, dict) else None
    except Exception as e:
        if token is not None:
            token.raise_if_cancelled()
        logger.debug("Geo lookup for %s failed: %s", hostname, e)
        return None

    if result is None or result.status != "success":
        logger.debug("Geo lookup for %s returned no usable data", hostname)
        return None

    if not skip_cache:
        geo_cache.set(cache_key, result)
    return result
