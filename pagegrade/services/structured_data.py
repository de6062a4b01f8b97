"""
pagegrade/services/structured_data.py
Structured-data extraction and light validation using extruct.

schemas:  schema.org type names found in JSON-LD, microdata and RDFa
failed:   JSON-LD <script> blocks that are not valid JSON
warnings: top-level JSON-LD items without an @context
"""
import asyncio
import json
from typing import Any, List, Optional, Set

import extruct
from bs4 import BeautifulSoup

from ..models import StructuredDataReport

_SYNTAXES = ["json-ld", "microdata", "rdfa"]


def _short_type(raw: Any) -> str:
    value = str(raw).strip().rstrip("/")
    for sep in ("/", "#", ":"):
        if sep in value:
            value = value.rsplit(sep, 1)[-1]
    return value


def _collect_types(value: Any, found: Set[str]) -> None:
    if isinstance(value, list):
        for item in value:
            _collect_types(item, found)
        return
    if not isinstance(value, dict):
        return
    raw_type = value.get("@type")
    if raw_type:
        for t in raw_type if isinstance(raw_type, list) else [raw_type]:
            name = _short_type(t)
            if name:
                found.add(name)
    for child in value.values():
        if isinstance(child, (dict, list)):
            _collect_types(child, found)


def _json_ld_blocks(html: str) -> List[str]:
    soup = BeautifulSoup(html, "lxml")
    return [
        (script.string or script.get_text() or "").strip()
        for script in soup.find_all("script", attrs={"type": "application/ld+json"})
    ]


def extract_structured_data(html: str, base_url: Optional[str] = None) -> StructuredDataReport:
    failed = 0
    warnings = 0
    for block in _json_ld_blocks(html):
        if not block:
            continue
        try:
            parsed = json.loads(block)
        except ValueError:
            failed += 1
            continue
        items = parsed if isinstance(parsed, list) else [parsed]
        warnings += sum(1 for item in items if isinstance(item, dict) and "@context" not in item)

    data = extruct.extract(html, base_url=base_url, syntaxes=_SYNTAXES, uniform=True, errors="ignore")
    found: Set[str] = set()
    for syntax in _SYNTAXES:
        _collect_types(data.get(syntax) or [], found)

    return StructuredDataReport(schemas=sorted(found), failed=failed, warnings=warnings)


async def validate_structured_data(html: str, base_url: Optional[str] = None) -> StructuredDataReport:
    """Run the CPU-bound extraction off the event loop."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, extract_structured_data, html, base_url)
