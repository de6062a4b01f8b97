from .exceptions import (
    AnalysisCancelledError, AnalysisError, AnalysisTimeoutError, HtmlFetchError,
    InvalidUrlError, NonHtmlContentError, UpstreamAuditError,
)
from .services import analyze_site, rescore_module, run_technical_detectors, weighted_score
from .utils.cancellation import CancellationToken
from .utils.history import InMemoryHistoryStore

__version__ = "1.0.0"
