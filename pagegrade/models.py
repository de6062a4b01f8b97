from pydantic import BaseModel, ConfigDict, Field, SerializeAsAny, field_validator
from typing import Any, Dict, List, Optional
from datetime import datetime
from enum import Enum

from bs4 import BeautifulSoup


class Strategy(str, Enum):
    MOBILE = "mobile"
    DESKTOP = "desktop"


class ModuleKey(str, Enum):
    PERFORMANCE = "performance"
    SCHEMA = "schema"
    GEO = "geo"
    SEO_BASICS = "seo_basics"
    SOCIAL = "social"
    SECURITY = "security"
    ACCESSIBILITY = "accessibility"
    LINKS = "links"


class HighlightStatus(str, Enum):
    GOOD = "good"
    WARN = "warn"
    INFO = "info"
    POOR = "poor"


class Severity(str, Enum):
    CRITICAL = "critical"
    WARNING = "warning"
    INFO = "info"


class ModuleStatus(str, Enum):
    OK = "ok"
    INTERNAL_ERROR = "internal_error"


# ─── Module definitions ────────────────────────────────────────────────────────

class ModuleDefinition(BaseModel):
    model_config = ConfigDict(frozen=True)

    key: ModuleKey
    label: str
    weight: int
    description: str


# Weights must sum to 100
MODULE_DEFINITIONS: List[ModuleDefinition] = [
    ModuleDefinition(
        key=ModuleKey.PERFORMANCE,
        label="Performance & Core Web Vitals",
        weight=15,
        description="Lab data from PageSpeed Insights for LCP, CLS, INP, and blocking time.",
    ),
    ModuleDefinition(
        key=ModuleKey.SCHEMA,
        label="Schema & Structured Data",
        weight=15,
        description="Structured data coverage across JSON-LD, microdata, and RDFa.",
    ),
    ModuleDefinition(
        key=ModuleKey.GEO,
        label="GEO Localization & Hreflang",
        weight=15,
        description="Hreflang hygiene, ccTLD alignment, sitemap alternates, and server geolocation.",
    ),
    ModuleDefinition(
        key=ModuleKey.SEO_BASICS,
        label="SEO Basics",
        weight=20,
        description="Title, meta description, canonical tags, robots directives, and sitemap reachability.",
    ),
    ModuleDefinition(
        key=ModuleKey.SOCIAL,
        label="Social Preview",
        weight=10,
        description="Open Graph, Twitter cards, and preview asset health.",
    ),
    ModuleDefinition(
        key=ModuleKey.SECURITY,
        label="Security & Headers",
        weight=10,
        description="HTTPS enforcement, HSTS, anti-sniff, framing protections, and mixed content checks.",
    ),
    ModuleDefinition(
        key=ModuleKey.ACCESSIBILITY,
        label="Accessibility Lite",
        weight=10,
        description="Alt text coverage and landmark elements for basic assistive compliance.",
    ),
    ModuleDefinition(
        key=ModuleKey.LINKS,
        label="Links & Indexability",
        weight=5,
        description="Broken link sampling, rel attributes, and index blocking directives.",
    ),
]

MODULE_DEFINITION_MAP: Dict[ModuleKey, ModuleDefinition] = {d.key: d for d in MODULE_DEFINITIONS}

if sum(d.weight for d in MODULE_DEFINITIONS) != 100:
    raise ValueError("module weights must sum to 100")


# ─── Module results ────────────────────────────────────────────────────────────

class HighlightEntry(BaseModel):
    label: str
    value: str
    status: Optional[HighlightStatus] = None


class ModuleIssues(BaseModel):
    critical: int = 0
    warning: int = 0
    info: int = 0

    def increment(self, severity: Severity) -> None:
        field = Severity(severity).value
        setattr(self, field, getattr(self, field) + 1)


class ModuleDetails(BaseModel):
    highlights: List[HighlightEntry] = []


class PerformanceDetails(ModuleDetails):
    lcp: Optional[float] = None
    cls: Optional[float] = None
    inp: Optional[float] = None
    tbt: Optional[float] = None
    perf_score: Optional[float] = None


class SchemaDetails(ModuleDetails):
    schemas: List[str] = []
    failed: int = 0
    warnings: int = 0
    validator_error: Optional[str] = None


class GeoDetails(ModuleDetails):
    hreflang_count: int = 0
    cc_tld: Optional[str] = None
    target_country: Optional[str] = None
    server_country: Optional[str] = None


class SeoBasicsDetails(ModuleDetails):
    title: str = ""
    meta_description: str = ""
    canonical_count: int = 0
    indexable: bool = True
    sitemap_reachable: bool = False


class SocialDetails(ModuleDetails):
    og_title: Optional[str] = None
    og_description: Optional[str] = None
    og_image: Optional[str] = None
    twitter_card: Optional[str] = None
    og_image_reachable: bool = False


class SecurityDetails(ModuleDetails):
    https: bool = False
    hsts: bool = False
    nosniff: bool = False
    frame_protected: bool = False
    mixed_content: int = 0


class MissingAltImage(BaseModel):
    src: Optional[str] = None
    index: int


class AccessibilityDetails(ModuleDetails):
    total_images: int = 0
    images_with_alt: int = 0
    missing_alt_sample: List[MissingAltImage] = []
    landmarks_detected: List[str] = []


class InternalErrorDetails(ModuleDetails):
    message: str


class ModuleResult(BaseModel):
    key: ModuleKey
    label: str
    weight: int
    score: float = Field(..., ge=0, le=10)
    summary: str = ""
    recommendations: List[str] = []
    issues: ModuleIssues = Field(default_factory=ModuleIssues)
    details: SerializeAsAny[ModuleDetails] = Field(default_factory=ModuleDetails)
    last_checked: datetime
    status: ModuleStatus = ModuleStatus.OK


# ─── Fetched payloads ──────────────────────────────────────────────────────────

class HtmlDocument(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    html: str
    status_code: int
    headers: Dict[str, str] = {}
    final_url: str
    soup: BeautifulSoup
    content_type: Optional[str] = None


class RobotsResult(BaseModel):
    text: Optional[str] = None
    fetched_from: Optional[str] = None


class SitemapAlternate(BaseModel):
    hreflang: str
    href: str


class SitemapEntry(BaseModel):
    loc: str
    lastmod: Optional[str] = None
    alternates: List[SitemapAlternate] = []


class SitemapFetch(BaseModel):
    url: str
    ok: bool
    status_code: Optional[int] = None
    is_index: bool = False
    entries: List[SitemapEntry] = []


class SitemapSummary(BaseModel):
    urls: List[str] = []
    fetched: List[SitemapFetch] = []
    has_hreflang: bool = False

    @property
    def reachable(self) -> bool:
        return any(f.ok for f in self.fetched)


class GeoLookupResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    status: Optional[str] = None
    country: Optional[str] = None
    country_code: Optional[str] = Field(None, alias="countryCode")
    region_name: Optional[str] = Field(None, alias="regionName")
    isp: Optional[str] = None
    query: Optional[str] = None
    message: Optional[str] = None


class LinkSampleEntry(BaseModel):
    url: str
    status_code: Optional[int] = None
    ok: bool = False
    rel: Optional[str] = None


class LinkSampleSummary(BaseModel):
    total: int = 0
    checked: List[LinkSampleEntry] = []
    broken: List[LinkSampleEntry] = []
    nofollow: int = 0


class LinksDetails(ModuleDetails):
    total_sampled: int = 0
    broken_sample: List[LinkSampleEntry] = []
    nofollow_ratio: float = 0.0
    indexable: bool = True


class StructuredDataReport(BaseModel):
    schemas: List[str] = []
    failed: int = 0
    warnings: int = 0


# ─── Analysis context & result ─────────────────────────────────────────────────

class AnalysisContext(BaseModel):
    """Everything the scoring modules may look at. Built once per run, never mutated."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    url: str
    normalized_url: str
    locale: str
    target_country: Optional[str] = None
    strategy: Strategy
    psi: Dict[str, Any]
    html: str
    soup: BeautifulSoup
    headers: Dict[str, str] = {}
    robots_txt: Optional[str] = None
    sitemap: Optional[SitemapSummary] = None
    geo: Optional[GeoLookupResult] = None
    link_sample: LinkSampleSummary = Field(default_factory=LinkSampleSummary)


class HistorySnapshot(BaseModel):
    timestamp: datetime
    overall_score: float


class RawPayloads(BaseModel):
    psi: Dict[str, Any] = {}
    headers: Dict[str, str] = {}
    robots: Optional[str] = None
    sitemap: Optional[SitemapSummary] = None
    geo: Optional[GeoLookupResult] = None
    link_sample: Optional[LinkSampleSummary] = None


class AnalysisResult(BaseModel):
    ok: bool = True
    url: str
    normalized_url: str
    strategy: Strategy
    locale: str
    overall: float = Field(..., ge=0, le=10)
    modules: List[ModuleResult] = []
    raw: RawPayloads = Field(default_factory=RawPayloads)
    timing_ms: float = 0.0
    started_at: datetime
    finished_at: datetime
    history_snapshots: List[HistorySnapshot] = []

    @field_validator("modules")
    @classmethod
    def unique_keys(cls, v):
        keys = [m.key for m in v]
        if len(keys) != len(set(keys)):
            raise ValueError("duplicate module keys in result")
        return v


# ─── Technical detectors ───────────────────────────────────────────────────────

class DetectorIssue(BaseModel):
    summary: str
    details: Dict[str, Any] = {}


class IssueBuckets(BaseModel):
    critical: List[DetectorIssue] = []
    warnings: List[DetectorIssue] = []
    improvements: List[DetectorIssue] = []


class DetectorResult(BaseModel):
    module: str
    checks: Dict[str, Any] = {}
    issues: IssueBuckets = Field(default_factory=IssueBuckets)
