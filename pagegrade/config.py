from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache
from typing import List, Optional


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )
    # PageSpeed Insights
    psi_api_key: Optional[str] = Field(
        None, validation_alias=AliasChoices("psi_api_key", "google_api_key")
    )
    psi_endpoint: str = "https://www.googleapis.com/pagespeedonline/v5/runPagespeed"
    psi_categories: List[str] = ["performance", "seo", "best-practices", "accessibility"]
    psi_timeout_seconds: float = Field(20, gt=0)
    # Target site
    html_timeout_seconds: float = Field(15, gt=0)
    robots_timeout_seconds: float = Field(8, gt=0)
    sitemap_timeout_seconds: float = Field(12, gt=0)
    sitemap_candidate_limit: int = Field(3, gt=0)
    sitemap_entry_limit: int = Field(100, gt=0)
    # Geo lookup (ip-api.com free tier is plain http)
    geo_api_base: str = "http://ip-api.com/json"
    geo_timeout_seconds: float = Field(8, gt=0)
    # Link sampling
    link_sample_limit: int = Field(50, gt=0)
    link_concurrency: int = Field(5, gt=0)
    head_timeout_seconds: float = Field(5, gt=0)
    og_image_timeout_seconds: float = Field(7, gt=0)
    # Run
    analysis_timeout_seconds: float = Field(90, gt=0)
    cache_ttl_seconds: float = Field(60, gt=0)
    default_locale: str = "en_US"
    history_limit: int = Field(10, gt=0)
    user_agent: str = "PageGradeBot/1.0 (+https://pagegrade.dev)"


@lru_cache()
def get_settings() -> Settings:
    return Settings()
