from .analyzer import analyze_site
from .detectors import run_technical_detectors
from .fetchers import clear_caches
from .modules import build_module_results
from .score_calculator import rescore_module, score_label, weighted_score
