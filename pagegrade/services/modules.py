"""
pagegrade/services/modules.py
The eight scoring modules.

Each module reads the shared AnalysisContext and returns a 0–10 score built
from additive point rules, the recommendations fired by those same rules,
issue counts and display highlights. build_module_results() runs them all,
isolating failures so a broken module scores 0 instead of aborting the run.
"""
import asyncio
import logging
import re
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, List, Optional
from urllib.parse import urlparse

import aiohttp
from pydantic import BaseModel, ConfigDict, Field

from ..config import get_settings
from ..models import (
    MODULE_DEFINITIONS, AccessibilityDetails, AnalysisContext, GeoDetails,
    HighlightEntry, HighlightStatus, InternalErrorDetails, LinksDetails,
    MissingAltImage, ModuleDefinition, ModuleDetails, ModuleIssues, ModuleKey,
    ModuleResult, ModuleStatus, PerformanceDetails, SchemaDetails,
    SecurityDetails, SeoBasicsDetails, Severity, SocialDetails,
)
from ..utils.urls import resolve_href
from .link_sampler import probe_link
from .score_calculator import clamp_score, round_half_up, round_score
from .structured_data import validate_structured_data

logger = logging.getLogger(__name__)
settings = get_settings()

GOOD, WARN, POOR = HighlightStatus.GOOD, HighlightStatus.WARN, HighlightStatus.POOR

IMPORTANT_SCHEMAS = ["WebSite", "WebPage", "Organization", "Product", "BreadcrumbList", "FAQPage", "Article"]
LANDMARK_SELECTORS = [
    "main", "nav", "header", "footer", "aside",
    "[role=main]", "[role=navigation]", "[role=banner]", "[role=contentinfo]",
]


class ModuleComputation(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    score: float
    summary: str
    recommendations: List[str] = []
    issues: ModuleIssues = Field(default_factory=ModuleIssues)
    details: ModuleDetails = Field(default_factory=ModuleDetails)


ModuleComputer = Callable[[AnalysisContext, aiohttp.ClientSession], Awaitable[ModuleComputation]]


# ── Formatting helpers ─────────────────────────────────────────────────────────

def format_ms(value: Optional[float]) -> Optional[str]:
    if value is None:
        return None
    if value >= 1000:
        return f"{value / 1000:.2f}s"
    return f"{round_half_up(value)}ms"


def format_ratio(value: float) -> str:
    return f"{round_half_up(value * 100)}%"


def highlights(*entries) -> List[HighlightEntry]:
    """Build highlights from (label, value, status) triples, dropping those without a value."""
    return [
        HighlightEntry(label=label, value=str(value), status=status)
        for label, value, status in entries
        if value is not None
    ]


def threshold_status(value: Optional[float], good: float, warn: float) -> HighlightStatus:
    if value is None:
        return POOR
    if value <= good:
        return GOOD
    if value <= warn:
        return WARN
    return POOR


def _rel_values(tag) -> List[str]:
    rel = tag.get("rel") or []
    if isinstance(rel, str):
        rel = rel.split()
    return [r.lower() for r in rel]


def _meta_content(soup, **attrs) -> Optional[str]:
    """content= of the first <meta> matching attrs (values matched case-insensitively)."""
    query = {k: re.compile(rf"^{re.escape(v)}$", re.I) for k, v in attrs.items()}
    tag = soup.find("meta", attrs=query)
    if tag is None:
        return None
    content = tag.get("content")
    return content.strip() if isinstance(content, str) else None


def _directives(value: Optional[str]) -> List[str]:
    return [d.strip().lower() for d in re.split(r"[,;]", value or "") if d.strip()]


def _numeric_audit(audits: Dict, audit_id: str) -> Optional[float]:
    value = (audits.get(audit_id) or {}).get("numericValue")
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


# ═══════════════════════════════════════════════════════════════════════════════
# PERFORMANCE
# ═══════════════════════════════════════════════════════════════════════════════

async def compute_performance(ctx: AnalysisContext, session: aiohttp.ClientSession) -> ModuleComputation:
    lighthouse = ctx.psi.get("lighthouseResult") or {}
    audits = lighthouse.get("audits") or {}
    categories = lighthouse.get("categories") or {}
    raw_score = (categories.get("performance") or {}).get("score")
    perf_score = float(raw_score) if isinstance(raw_score, (int, float)) else 0.0
    score = round_score(perf_score * 10)

    lcp = _numeric_audit(audits, "largest-contentful-paint")
    cls = _numeric_audit(audits, "cumulative-layout-shift")
    inp = _numeric_audit(audits, "interaction-to-next-paint")
    tbt = _numeric_audit(audits, "total-blocking-time")

    issues = ModuleIssues()
    recommendations: List[str] = []

    if lcp is not None and lcp > 4000:
        issues.increment(Severity.WARNING)
        recommendations.append("Reduce Largest Contentful Paint below 2.5s with image and font optimizations.")
    if cls is not None and cls > 0.25:
        issues.increment(Severity.WARNING)
        recommendations.append("Stabilize layout shifts by reserving space for media and dynamic content.")
    if inp is not None and inp > 500:
        issues.increment(Severity.CRITICAL)
        recommendations.append("Improve Interaction to Next Paint by trimming long tasks and input handlers.")
    if tbt is not None and tbt > 600:
        issues.increment(Severity.WARNING)
        recommendations.append("Lower Total Blocking Time with code splitting and async loading.")

    display_score = round_half_up(perf_score * 100)
    details = PerformanceDetails(
        lcp=lcp, cls=cls, inp=inp, tbt=tbt, perf_score=perf_score,
        highlights=highlights(
            ("Performance Score", display_score, GOOD if score >= 8 else WARN if score >= 6 else POOR),
            ("LCP", format_ms(lcp), threshold_status(lcp, 2500, 4000)),
            ("CLS", f"{cls:.2f}" if cls is not None else None, threshold_status(cls, 0.1, 0.25)),
            ("INP", format_ms(inp), threshold_status(inp, 200, 500)),
            ("TBT", format_ms(tbt), threshold_status(tbt, 200, 600)),
        ),
    )
    return ModuleComputation(
        score=score,
        summary=f"PSI performance scored {display_score} out of 100.",
        recommendations=recommendations,
        issues=issues,
        details=details,
    )


# ═══════════════════════════════════════════════════════════════════════════════
# SCHEMA
# ═══════════════════════════════════════════════════════════════════════════════

async def compute_schema(ctx: AnalysisContext, session: aiohttp.ClientSession) -> ModuleComputation:
    issues = ModuleIssues()
    recommendations: List[str] = []
    schemas: List[str] = []
    failed = 0
    warnings = 0
    validator_error = None

    try:
        report = await validate_structured_data(ctx.html, ctx.url)
        schemas, failed, warnings = sorted(set(report.schemas)), report.failed, report.warnings
        if failed > 0:
            issues.increment(Severity.WARNING)
            recommendations.append("Fix structured data validation errors detected by the testing tool.")
        if not schemas:
            issues.increment(Severity.WARNING)
            recommendations.append("Add JSON-LD markup describing key entities (WebSite, WebPage, Product, etc.).")
    except Exception as e:
        logger.warning("Structured data validator failed for %s: %s", ctx.url, e)
        validator_error = str(e)[:200]
        issues.increment(Severity.WARNING)
        recommendations.append("Structured data validator failed; verify HTML output or reduce blocking scripts.")

    important_count = sum(1 for s in IMPORTANT_SCHEMAS if s in schemas)

    score = 0.0
    if schemas:
        score += 4
    score += min(4, important_count)
    if failed == 0:
        score += 2

    if "WebSite" not in schemas:
        recommendations.append("Provide WebSite schema with SearchAction for better branded SERP coverage.")
    if "BreadcrumbList" not in schemas:
        recommendations.append("Add BreadcrumbList JSON-LD to improve sitelinks.")

    return ModuleComputation(
        score=clamp_score(score),
        summary=(
            f"Detected {len(schemas)} structured data types."
            if schemas else "No structured data detected on the scanned page."
        ),
        recommendations=recommendations,
        issues=issues,
        details=SchemaDetails(
            schemas=schemas,
            failed=failed,
            warnings=warnings,
            validator_error=validator_error,
            highlights=highlights(
                ("Schemas detected", len(schemas), GOOD if schemas else WARN),
                ("Validator errors", failed, WARN if failed else GOOD),
                ("Warnings", warnings, WARN if warnings else GOOD),
            ),
        ),
    )


# ═══════════════════════════════════════════════════════════════════════════════
# GEO / HREFLANG
# ═══════════════════════════════════════════════════════════════════════════════

async def compute_geo(ctx: AnalysisContext, session: aiohttp.ClientSession) -> ModuleComputation:
    issues = ModuleIssues()
    recommendations: List[str] = []
    target = ctx.target_country

    hreflang_links = [
        tag for tag in ctx.soup.find_all("link", hreflang=True)
        if "alternate" in _rel_values(tag)
    ]
    hreflang_count = len(hreflang_links)
    has_hreflang = hreflang_count > 0
    hreflang_for_target = bool(target) and any(
        target.lower() in (tag.get("hreflang") or "").lower() for tag in hreflang_links
    )

    last_label = (urlparse(ctx.url).hostname or "").rsplit(".", 1)[-1]
    cc_tld = last_label.upper() if len(last_label) == 2 else None
    cc_tld_matches = bool(cc_tld and target and cc_tld == target)
    server_code = (ctx.geo.country_code or "").upper() if ctx.geo else ""
    server_matches = bool(target) and server_code == target
    sitemap_has_hreflang = bool(ctx.sitemap and ctx.sitemap.has_hreflang)

    score = 0
    if has_hreflang:
        score += 4
    if hreflang_for_target:
        score += 1
    if cc_tld_matches:
        score += 2
    if sitemap_has_hreflang:
        score += 2
    if server_matches:
        score += 2

    if not has_hreflang:
        issues.increment(Severity.WARNING)
        recommendations.append("Add hreflang annotations to signal language/region variants.")
    if not sitemap_has_hreflang:
        recommendations.append("Include xhtml:link alternates inside sitemap.xml for crawl efficiency.")
    if target and not server_matches:
        recommendations.append("Consider regional hosting/CDN POPs near target market.")

    geo_word = "aligns with" if server_matches else "differs from"
    return ModuleComputation(
        score=clamp_score(score),
        summary=f"{hreflang_count} hreflang entries detected; server geo {geo_word} target market.",
        recommendations=recommendations,
        issues=issues,
        details=GeoDetails(
            hreflang_count=hreflang_count,
            cc_tld=cc_tld,
            target_country=target,
            server_country=ctx.geo.country if ctx.geo else None,
            highlights=highlights(
                ("Hreflang tags", hreflang_count, GOOD if has_hreflang else WARN),
                ("Sitemap alternates", "Yes" if sitemap_has_hreflang else "No", GOOD if sitemap_has_hreflang else WARN),
                ("ccTLD match", "Yes" if cc_tld_matches else "No", GOOD if cc_tld_matches else WARN),
                ("Server region", server_code or "Unknown", GOOD if server_matches else WARN),
            ),
        ),
    )


# ═══════════════════════════════════════════════════════════════════════════════
# SEO BASICS
# ═══════════════════════════════════════════════════════════════════════════════

def is_indexable(ctx: AnalysisContext) -> bool:
    """False when meta robots or X-Robots-Tag carries noindex/none."""
    directives = _directives(_meta_content(ctx.soup, name="robots")) + _directives(ctx.headers.get("x-robots-tag"))
    # X-Robots-Tag may be scoped to a user agent: "googlebot: noindex"
    directives = [d.rsplit(":", 1)[-1].strip() for d in directives]
    return not any(d in ("noindex", "none") for d in directives)


async def compute_seo_basics(ctx: AnalysisContext, session: aiohttp.ClientSession) -> ModuleComputation:
    issues = ModuleIssues()
    recommendations: List[str] = []
    per_check = 2

    title_tag = ctx.soup.find("title")
    title = title_tag.get_text().strip() if title_tag else ""
    description = _meta_content(ctx.soup, name="description") or ""
    canonical_count = sum(1 for tag in ctx.soup.find_all("link") if "canonical" in _rel_values(tag))
    indexable = is_indexable(ctx)
    sitemap_reachable = bool(ctx.sitemap and ctx.sitemap.reachable)

    score = 0
    if 30 <= len(title) <= 60:
        score += per_check
    else:
        issues.increment(Severity.WARNING)
        recommendations.append("Keep the <title> tag between 30-60 characters.")

    if 70 <= len(description) <= 160:
        score += per_check
    else:
        recommendations.append("Meta description should be 70-160 characters describing the page intent.")

    if canonical_count == 1:
        score += per_check
    else:
        issues.increment(Severity.WARNING)
        recommendations.append("Add a canonical tag." if canonical_count == 0 else "Avoid multiple canonical tags.")

    if indexable:
        score += per_check
    else:
        issues.increment(Severity.CRITICAL)
        recommendations.append("Remove noindex directives to allow crawling.")

    if sitemap_reachable:
        score += per_check
    else:
        recommendations.append("Ensure sitemap.xml is accessible and referenced in robots.txt.")

    return ModuleComputation(
        score=clamp_score(score),
        summary=(
            "Core on-page tags are mostly configured." if indexable
            else "Indexing directives currently block crawlers."
        ),
        recommendations=recommendations,
        issues=issues,
        details=SeoBasicsDetails(
            title=title,
            meta_description=description,
            canonical_count=canonical_count,
            indexable=indexable,
            sitemap_reachable=sitemap_reachable,
            highlights=highlights(
                ("Title length", len(title), GOOD if title else WARN),
                ("Meta description", len(description), GOOD if description else WARN),
                ("Canonical tags", canonical_count, GOOD if canonical_count == 1 else WARN),
                ("Indexable", "Yes" if indexable else "No", GOOD if indexable else POOR),
                ("Sitemap reachable", "Yes" if sitemap_reachable else "No", GOOD if sitemap_reachable else WARN),
            ),
        ),
    )


# ═══════════════════════════════════════════════════════════════════════════════
# SOCIAL
# ═══════════════════════════════════════════════════════════════════════════════

async def compute_social(ctx: AnalysisContext, session: aiohttp.ClientSession) -> ModuleComputation:
    issues = ModuleIssues()
    recommendations: List[str] = []

    og_title = _meta_content(ctx.soup, property="og:title")
    og_description = _meta_content(ctx.soup, property="og:description")
    og_image = _meta_content(ctx.soup, property="og:image")
    twitter_card = _meta_content(ctx.soup, name="twitter:card") or _meta_content(ctx.soup, property="twitter:card")

    score = 0.0
    present = sum(1 for v in (og_title, og_description, og_image) if v)
    if present == 3:
        score += 7
    else:
        score += clamp_score(present / 3 * 7)
        recommendations.append("Populate og:title, og:description, and og:image for richer shares.")

    if twitter_card:
        score += 1
    else:
        recommendations.append("Add twitter:card to define summary or summary_large_image previews.")

    image_ok = False
    image_url = resolve_href(og_image, ctx.url) if og_image else None
    if image_url:
        probe = await probe_link(session, image_url, settings.og_image_timeout_seconds)
        image_ok = probe.ok
        if probe.status_code is None:
            recommendations.append("Open Graph image could not be verified.")
        elif not image_ok:
            recommendations.append("Open Graph image URL is unreachable.")
    if image_ok:
        score += 2

    if not og_title or not og_description:
        issues.increment(Severity.WARNING)

    return ModuleComputation(
        score=clamp_score(score),
        summary=(
            "Social previews look healthy." if present == 3
            else "Missing Open Graph metadata lowers share quality."
        ),
        recommendations=recommendations,
        issues=issues,
        details=SocialDetails(
            og_title=og_title,
            og_description=og_description,
            og_image=og_image,
            twitter_card=twitter_card,
            og_image_reachable=image_ok,
            highlights=highlights(
                ("OG title", "Yes" if og_title else "No", GOOD if og_title else WARN),
                ("OG description", "Yes" if og_description else "No", GOOD if og_description else WARN),
                ("OG image", "Yes" if og_image else "No", GOOD if og_image else WARN),
                ("Twitter card", twitter_card or "None", GOOD if twitter_card else WARN),
            ),
        ),
    )


# ═══════════════════════════════════════════════════════════════════════════════
# SECURITY
# ═══════════════════════════════════════════════════════════════════════════════

def count_mixed_content(ctx: AnalysisContext) -> int:
    count = 0
    for tag in ctx.soup.find_all(True):
        value = tag.get("src") if tag.has_attr("src") else tag.get("href")
        if isinstance(value, str) and value.strip().lower().startswith("http://"):
            count += 1
    return count


async def compute_security(ctx: AnalysisContext, session: aiohttp.ClientSession) -> ModuleComputation:
    issues = ModuleIssues()
    recommendations: List[str] = []

    if urlparse(ctx.url).scheme.lower() != "https":
        issues.increment(Severity.CRITICAL)
        recommendations.append("Serve the site over HTTPS to avoid major SEO penalties.")
        return ModuleComputation(
            score=0,
            summary="HTTPS is required for any meaningful score.",
            recommendations=recommendations,
            issues=issues,
            details=SecurityDetails(https=False, highlights=highlights(("HTTPS", "No", POOR))),
        )

    hsts = ctx.headers.get("strict-transport-security")
    xcto = ctx.headers.get("x-content-type-options") or ""
    xfo = ctx.headers.get("x-frame-options") or ""
    csp = ctx.headers.get("content-security-policy") or ""
    content_type = ctx.headers.get("content-type") or ""

    score = 0
    if hsts:
        score += 2
    else:
        recommendations.append("Add Strict-Transport-Security header.")

    nosniff = "nosniff" in xcto.lower()
    if nosniff:
        score += 2
    else:
        recommendations.append("Add X-Content-Type-Options: nosniff.")

    frame_protected = bool(
        (xfo and "allow" not in xfo.lower())
        or (re.search(r"frame-ancestors", csp, re.I) and not re.search(r"frame-ancestors\s+\*", csp, re.I))
    )
    if frame_protected:
        score += 2
    else:
        recommendations.append("Set X-Frame-Options DENY or a CSP frame-ancestors rule.")

    if re.search(r"text/html", content_type, re.I) and re.search(r"charset=", content_type, re.I):
        score += 2
    else:
        recommendations.append("Return Content-Type: text/html; charset=UTF-8.")

    mixed_content = count_mixed_content(ctx)
    if mixed_content == 0:
        score += 2
    else:
        issues.increment(Severity.WARNING)
        recommendations.append("Mixed-content resources detected; upgrade to HTTPS.")

    return ModuleComputation(
        score=clamp_score(score),
        summary=(
            "Security headers set but mixed content detected." if mixed_content
            else "Core security headers look good."
        ),
        recommendations=recommendations,
        issues=issues,
        details=SecurityDetails(
            https=True,
            hsts=bool(hsts),
            nosniff=nosniff,
            frame_protected=frame_protected,
            mixed_content=mixed_content,
            highlights=highlights(
                ("HSTS", "Yes" if hsts else "No", GOOD if hsts else WARN),
                ("NoSniff", "Yes" if nosniff else "No", GOOD if nosniff else WARN),
                ("Frame protection", "Yes" if frame_protected else "No", GOOD if frame_protected else WARN),
                ("Mixed content refs", mixed_content, WARN if mixed_content else GOOD),
            ),
        ),
    )


# ═══════════════════════════════════════════════════════════════════════════════
# ACCESSIBILITY
# ═══════════════════════════════════════════════════════════════════════════════

async def compute_accessibility(ctx: AnalysisContext, session: aiohttp.ClientSession) -> ModuleComputation:
    images = ctx.soup.find_all("img")
    missing_alt: List[MissingAltImage] = []
    with_alt = 0
    for index, img in enumerate(images):
        alt = img.get("alt")
        if isinstance(alt, str) and alt.strip():
            with_alt += 1
        else:
            missing_alt.append(MissingAltImage(src=img.get("src"), index=index))
    alt_ratio = with_alt / len(images) if images else 1.0

    landmarks = [sel for sel in LANDMARK_SELECTORS if ctx.soup.select_one(sel) is not None]

    score = round_half_up(alt_ratio * 6)
    if alt_ratio >= 0.95:
        score += 2
    if len(landmarks) >= 2:
        score += 2

    issues = ModuleIssues()
    recommendations: List[str] = []
    if alt_ratio < 0.95:
        issues.increment(Severity.WARNING)
        recommendations.append(
            "Add descriptive alt text to all meaningful images. Decorative media should use empty alt attributes."
        )
    if len(landmarks) < 2:
        recommendations.append(
            "Use at least two semantic landmarks (<main>, <nav>, <aside>, etc.) for better keyboard navigation."
        )

    return ModuleComputation(
        score=clamp_score(score),
        summary=f"Alt coverage at {format_ratio(alt_ratio)}.",
        recommendations=recommendations,
        issues=issues,
        details=AccessibilityDetails(
            total_images=len(images),
            images_with_alt=with_alt,
            missing_alt_sample=missing_alt[:5],
            landmarks_detected=landmarks,
            highlights=highlights(
                ("Images with alt", f"{with_alt}/{len(images)}", GOOD if alt_ratio >= 0.95 else WARN),
                ("Landmark types", len(landmarks), GOOD if len(landmarks) >= 2 else WARN),
            ),
        ),
    )


# ═══════════════════════════════════════════════════════════════════════════════
# LINKS
# ═══════════════════════════════════════════════════════════════════════════════

async def compute_links(ctx: AnalysisContext, session: aiohttp.ClientSession) -> ModuleComputation:
    issues = ModuleIssues()
    recommendations: List[str] = []
    sample = ctx.link_sample
    broken_count = len(sample.broken)
    total = sample.total
    nofollow_ratio = sample.nofollow / total if total else 0.0
    broken_ratio = broken_count / total if total else 0.0

    score = 10.0
    if broken_count:
        score -= min(6, broken_ratio * 10)
        issues.increment(Severity.WARNING)
        recommendations.append(f"{broken_count} sampled links returned errors; fix or remove broken URLs.")

    if nofollow_ratio > 0.2:
        score -= min(3, nofollow_ratio * 5)
        recommendations.append(
            "High nofollow ratio on internal links. Ensure important pages can receive internal equity."
        )

    if total < 10:
        score -= 1
        recommendations.append("Limited link sampling (less than 10). Add more internal links on the homepage.")

    indexable = is_indexable(ctx)
    if not indexable:
        score = min(score, 4)
        issues.increment(Severity.CRITICAL)
        recommendations.append("Remove noindex directives that block crawling.")

    return ModuleComputation(
        score=clamp_score(score),
        summary=f"{broken_count} of {total} sampled links failed." if broken_count else "Sampled links healthy.",
        recommendations=recommendations,
        issues=issues,
        details=LinksDetails(
            total_sampled=total,
            broken_sample=sample.broken[:5],
            nofollow_ratio=nofollow_ratio,
            indexable=indexable,
            highlights=highlights(
                ("Links sampled", total, GOOD if total >= 10 else WARN),
                ("Broken links", broken_count, WARN if broken_count else GOOD),
                ("Nofollow ratio", format_ratio(nofollow_ratio), WARN if nofollow_ratio > 0.2 else GOOD),
                ("Indexable", "Yes" if indexable else "No", GOOD if indexable else POOR),
            ),
        ),
    )


# ── Dispatch ───────────────────────────────────────────────────────────────────

COMPUTERS: Dict[ModuleKey, ModuleComputer] = {
    ModuleKey.PERFORMANCE: compute_performance,
    ModuleKey.SCHEMA: compute_schema,
    ModuleKey.GEO: compute_geo,
    ModuleKey.SEO_BASICS: compute_seo_basics,
    ModuleKey.SOCIAL: compute_social,
    ModuleKey.SECURITY: compute_security,
    ModuleKey.ACCESSIBILITY: compute_accessibility,
    ModuleKey.LINKS: compute_links,
}

_missing = set(ModuleKey) - set(COMPUTERS)
if _missing:
    raise RuntimeError(f"no computer registered for {sorted(k.value for k in _missing)}")


def internal_error_result(definition: ModuleDefinition, error: BaseException, timestamp: datetime) -> ModuleResult:
    message = str(error)[:300] or error.__class__.__name__
    return ModuleResult(
        key=definition.key,
        label=definition.label,
        weight=definition.weight,
        score=0,
        summary=f"Module check failed: {message}",
        recommendations=[],
        issues=ModuleIssues(critical=1),
        details=InternalErrorDetails(message=message),
        last_checked=timestamp,
        status=ModuleStatus.INTERNAL_ERROR,
    )


async def build_module_results(ctx: AnalysisContext, session: aiohttp.ClientSession) -> List[ModuleResult]:
    """Run every module concurrently; results come back in MODULE_DEFINITIONS order."""
    timestamp = datetime.now(timezone.utc)

    async def run_one(definition: ModuleDefinition) -> ModuleResult:
        try:
            computation = await COMPUTERS[definition.key](ctx, session)
            return ModuleResult(
                key=definition.key,
                label=definition.label,
                weight=definition.weight,
                score=round_score(computation.score),
                summary=computation.summary,
                recommendations=computation.recommendations,
                issues=computation.issues,
                details=computation.details,
                last_checked=timestamp,
            )
        except Exception as e:
            logger.exception("Module %s failed for %s", definition.key.value, ctx.url)
            return internal_error_result(definition, e, timestamp)

    return list(await asyncio.gather(*[run_one(d) for d in MODULE_DEFINITIONS]))
