"""
pagegrade/exceptions.py
Error types raised by the analysis engine.

Only fatal conditions surface as exceptions. Degraded sources (robots.txt,
sitemaps, geo lookup, link probes) return None / empty values instead.
"""
from typing import Optional


class AnalysisError(Exception):
    """Base class for every error raised by pagegrade."""


class InvalidUrlError(AnalysisError):
    """The URL given to the analyzer is missing or cannot be parsed."""


class UpstreamAuditError(AnalysisError):
    """PageSpeed Insights failed or answered without a Lighthouse result."""


class HtmlFetchError(AnalysisError):
    """The target page could not be downloaded."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class NonHtmlContentError(HtmlFetchError):
    """The target URL answered with a non-HTML content type."""

    def __init__(self, message: str, content_type: Optional[str] = None):
        super().__init__(message)
        self.content_type = content_type


class AnalysisTimeoutError(AnalysisError):
    """The global analysis deadline elapsed before the run finished."""

    def __init__(self, message: str = "Analysis timed out"):
        super().__init__(message)


class AnalysisCancelledError(AnalysisError):
    """The caller cancelled the run without supplying its own reason."""

    def __init__(self, message: str = "Analysis cancelled"):
        super().__init__(message)
