"""
pagegrade/services/score_calculator.py
Combines per-module scores (0–10) into the overall weighted score.
Pure functions: also used to re-score a result after a single module is re-checked.
"""
import math
from typing import Iterable, Optional

from ..models import AnalysisResult, ModuleResult


def clamp_score(value: Optional[float], lo: float = 0.0, hi: float = 10.0) -> float:
    if value is None or (isinstance(value, float) and math.isnan(value)):
        return lo
    return max(lo, min(hi, float(value)))


def round_score(value: Optional[float], precision: int = 2) -> float:
    return round(clamp_score(value), precision)


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def weighted_score(modules: Iterable[ModuleResult]) -> float:
    """
    round2( Σ(score × weight) / Σ(weight) ), clamped to [0, 10].
    Empty input or zero total weight scores 0.
    """
    total_weight = 0.0
    weighted_sum = 0.0
    for module in modules:
        total_weight += module.weight
        weighted_sum += module.score * module.weight

    if total_weight == 0:
        return 0.0
    return round_score(weighted_sum / total_weight)


def rescore_module(result: AnalysisResult, module: ModuleResult) -> AnalysisResult:
    """
    Return a copy of result with `module` replacing the entry with the same key
    (appended if absent) and the overall score recomputed.
    """
    modules = [module if m.key == module.key else m for m in result.modules]
    if not any(m.key == module.key for m in result.modules):
        modules.append(module)
    return result.model_copy(update={"modules": modules, "overall": weighted_score(modules)})


def score_label(score: float) -> str:
    if score >= 8:
        return "excellent"
    elif score >= 6:
        return "good"
    elif score >= 4:
        return "fair"
    else:
        return "poor"
