"""
pagegrade/utils/urls.py
URL, locale and header normalization helpers shared by the fetchers and modules.
"""
from typing import Iterable, Optional, Tuple, Dict
from urllib.parse import parse_qsl, urlencode, urljoin, urlparse

from ..exceptions import InvalidUrlError

_SKIPPED_SCHEMES = ("javascript:", "mailto:", "tel:")
_DEFAULT_PORTS = {"http": 80, "https": 443}


def normalize_audit_url(raw_url: str) -> str:
    """
    Canonical form used for cache keys and history lookups:
    https:// added when no scheme is given, fragment dropped, query params
    sorted, host lower-cased, single trailing slash removed from non-root paths.
    """
    if not raw_url or not isinstance(raw_url, str) or not raw_url.strip():
        raise InvalidUrlError("url is required.")
    trimmed = raw_url.strip()
    if not trimmed.lower().startswith(("http://", "https://")):
        trimmed = f"https://{trimmed}"

    try:
        parsed = urlparse(trimmed)
        hostname = parsed.hostname
        port = parsed.port
    except ValueError as e:
        raise InvalidUrlError(f"Could not parse {raw_url!r}: {e}") from e
    if not hostname:
        raise InvalidUrlError(f"Could not parse a hostname from {raw_url!r}")

    netloc = hostname.lower()
    if ":" in netloc:
        # IPv6 literal
        netloc = f"[{netloc}]"
    if port:
        netloc = f"{netloc}:{port}"
    if parsed.username:
        auth = parsed.username + (f":{parsed.password}" if parsed.password else "")
        netloc = f"{auth}@{netloc}"

    path = parsed.path or "/"
    if path.endswith("/") and path != "/":
        path = path[:-1]

    query = urlencode(sorted(parse_qsl(parsed.query, keep_blank_values=True)))
    return parsed._replace(
        scheme=parsed.scheme.lower(), netloc=netloc, path=path, query=query, fragment=""
    ).geturl()


def origin_of(url: str) -> str:
    p = urlparse(url)
    return f"{p.scheme}://{p.netloc}"


def _origin_key(url: str) -> Tuple[str, str, Optional[int]]:
    p = urlparse(url)
    scheme = p.scheme.lower()
    return scheme, p.hostname or "", p.port or _DEFAULT_PORTS.get(scheme)


def same_origin(a: str, b: str) -> bool:
    """Scheme, host and port match; default ports (80/443) count as omitted."""
    try:
        return _origin_key(a) == _origin_key(b)
    except ValueError:
        return False


def should_skip_href(href: str) -> bool:
    return href.lower().startswith(_SKIPPED_SCHEMES)


def resolve_href(href: Optional[str], base: str) -> Optional[str]:
    """Resolve href against base; None when it is empty or not an http(s) URL."""
    if not href:
        return None
    try:
        absolute = urljoin(base, href.strip())
    except ValueError:
        return None
    if urlparse(absolute).scheme not in ("http", "https"):
        return None
    return absolute


def derive_country_from_locale(locale: Optional[str]) -> Optional[str]:
    """'en_US' / 'en-gb' -> 'US' / 'GB'; None when the locale has no region part."""
    if not locale:
        return None
    parts = str(locale).replace("-", "_").split("_")
    if len(parts) < 2:
        return None
    country = parts[-1].strip().upper()
    return country[-2:] if len(country) >= 2 else None


def normalize_headers(items: Iterable[Tuple[str, str]]) -> Dict[str, str]:
    """Lower-case header names; repeated headers are joined with ', '."""
    grouped: Dict[str, list] = {}
    for key, value in items:
        if not key or value is None:
            continue
        grouped.setdefault(key.lower(), []).append(str(value))
    return {k: ", ".join(v) for k, v in grouped.items()}
