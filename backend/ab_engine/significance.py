"""Significance engine: two-proportion z-test of a challenger against control.

Rates are read from the stored Result records (0-100) and converted to
fractions. Below the sample-size floor the lift is still reported, but the
comparison is never flagged significant and carries no p-value.
"""
import math
from typing import Any, Dict, List, Optional

from .metrics import metric_rate

CRITICAL_VALUES = {
    90: 1.645,
    95: 1.96,
    99: 2.576,
}
DEFAULT_CONFIDENCE_LEVEL = 95
DEFAULT_MIN_SAMPLE_SIZE = 30


def normal_cdf(x: float) -> float:
    """Standard normal CDF (Zelen-Severo approximation, error < 7.5e-8)"""
    t = 1 / (1 + 0.2316419 * abs(x))
    d = 0.3989423 * math.exp(-x * x / 2)
    p = d * t * (0.3193815 + t * (-0.3565638 + t * (1.781478 + t * (-1.821256 + t * 1.330274))))
    return 1 - p if x > 0 else p


def inverse_normal_cdf(probability: float) -> float:
    """Quantile of the standard normal, by bisection over normal_cdf"""
    if not 0 < probability < 1:
        raise ValueError("probability must be in (0, 1)")

    low, high = -10.0, 10.0
    for _ in range(80):
        mid = (low + high) / 2
        if normal_cdf(mid) < probability:
            low = mid
        else:
            high = mid
    return (low + high) / 2


def critical_value(confidence_level: Optional[float],
                   default_level: int = DEFAULT_CONFIDENCE_LEVEL) -> float:
    """Two-tailed critical z; unknown levels fall back to the default level"""
    return CRITICAL_VALUES.get(confidence_level, CRITICAL_VALUES.get(default_level, 1.96))


def relative_lift(control_rate: float, challenger_rate: float) -> float:
    if control_rate == 0:
        return 0.0
    return ((challenger_rate - control_rate) / control_rate) * 100


def _sample_size(result: Dict[str, Any]) -> int:
    return (result.get("statistical_analysis") or {}).get("sample_size", 0)


def calculate_significance(control: Dict[str, Any], challenger: Dict[str, Any], metric: str,
                           confidence_level: Optional[float],
                           min_sample_size: int = DEFAULT_MIN_SAMPLE_SIZE,
                           default_confidence_level: int = DEFAULT_CONFIDENCE_LEVEL) -> Dict[str, Any]:
    """Analysis fields for the challenger's Result.

    Pure function of its inputs: the same Result data always yields the
    same dict, so repeated recomputes can overwrite each other safely.
    """
    p1 = metric_rate(control, metric) / 100
    p2 = metric_rate(challenger, metric) / 100
    n1 = _sample_size(control)
    n2 = _sample_size(challenger)

    lift = relative_lift(p1, p2)

    if n1 < min_sample_size or n2 < min_sample_size:
        return {
            "p_value": None,
            "z_score": None,
            "statistical_significance": False,
            "lift": lift,
            "confidence_interval": {"lower": 0, "upper": 0, "metric": metric},
            "lift_confidence_interval": {"lower": 0, "upper": 0},
        }

    critical = critical_value(confidence_level, default_confidence_level)

    pooled = (p1 * n1 + p2 * n2) / (n1 + n2)
    standard_error = math.sqrt(pooled * (1 - pooled) * (1 / n1 + 1 / n2))

    # identical all-zero or all-one rates leave no variance to test against
    z_score = abs(p2 - p1) / standard_error if standard_error > 0 else 0.0
    p_value = 2 * (1 - normal_cdf(abs(z_score)))

    rate_margin = critical * math.sqrt(p2 * (1 - p2) / n2) * 100

    if p1 > 0:
        lift_se = math.sqrt(p2 * (1 - p2) / n2 + p1 * (1 - p1) / n1) / p1 * 100
    else:
        lift_se = 0.0

    return {
        "p_value": p_value,
        "z_score": z_score,
        "statistical_significance": z_score > critical,
        "lift": lift,
        "confidence_interval": {
            "lower": p2 * 100 - rate_margin,
            "upper": p2 * 100 + rate_margin,
            "metric": metric,
        },
        "lift_confidence_interval": {
            "lower": lift - critical * lift_se,
            "upper": lift + critical * lift_se,
        },
    }


def required_sample_size(baseline_rate: float, minimum_detectable_effect: float,
                         confidence_level: Optional[float], power: float = 0.8,
                         default_confidence_level: int = DEFAULT_CONFIDENCE_LEVEL) -> Optional[int]:
    """Per-variant sample needed to detect a relative lift of the given size.

    baseline_rate is a 0-100 rate, minimum_detectable_effect a relative
    percentage. Returns None when the inputs cannot describe a proportion.
    """
    p1 = baseline_rate / 100
    p2 = p1 * (1 + minimum_detectable_effect / 100)

    if p1 <= 0 or p1 >= 1 or p2 <= 0 or p2 >= 1 or p1 == p2:
        return None

    z_alpha = critical_value(confidence_level, default_confidence_level)
    z_beta = inverse_normal_cdf(power)
    p_bar = (p1 + p2) / 2

    numerator = (
        z_alpha * math.sqrt(2 * p_bar * (1 - p_bar))
        + z_beta * math.sqrt(p1 * (1 - p1) + p2 * (1 - p2))
    ) ** 2
    return math.ceil(numerator / (p2 - p1) ** 2)


def select_winner(candidates: List[Dict[str, Any]], policy: str = "highest_metric") -> Optional[Dict[str, Any]]:
    """Pick one of several significant challengers; the first encountered wins ties.

    Candidates carry `metric_value` and a `significance` dict with `lift`
    and `p_value`.
    """
    if not candidates:
        return None

    if policy == "highest_lift":
        better = lambda current, best: current["significance"]["lift"] > best["significance"]["lift"]
    elif policy == "lowest_p_value":
        better = lambda current, best: current["significance"]["p_value"] < best["significance"]["p_value"]
    else:
        better = lambda current, best: current["metric_value"] > best["metric_value"]

    winner = candidates[0]
    for candidate in candidates[1:]:
        if better(candidate, winner):
            winner = candidate
    return winner
