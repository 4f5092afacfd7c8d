import math
from dataclasses import dataclass
from typing import Optional

from scipy import stats as scipy_stats

from app.services.promotion.policy import (
    MIN_SAMPLE_FOR_SIGNIFICANCE,
    achieved_confidence,
    critical_z,
)


@dataclass
class VariantMetrics:
    variant_name: str
    sample_size: int
    success_rate: float
    error_rate: float
    variant_id: Optional[str] = None
    traffic_percentage: Optional[float] = None
    avg_latency_ms: Optional[float] = None
    p95_latency_ms: Optional[float] = None


@dataclass
class SignificanceResult:
    has_significance: bool
    z_score: float
    p_value: float
    confidence: float  # Achieved tier: 0, 90, 95, 99 or 99.9


def normal_cdf(x: float) -> float:
    return float(scipy_stats.norm.cdf(x))


def calculate_pooled_proportion(candidate: VariantMetrics, control: VariantMetrics) -> float:
    n1, n2 = candidate.sample_size, control.sample_size
    if n1 + n2 == 0:
        return 0.0
    return (candidate.success_rate * n1 + control.success_rate * n2) / (n1 + n2)


def calculate_z_score(candidate: VariantMetrics, control: VariantMetrics) -> float:
    """
    Absolute pooled two-proportion Z-score.

    Rates are not validated upstream, so a pooled variance that is zero,
    negative (rates outside [0, 1]) or nan yields 0 instead of raising.
    """
    pooled = calculate_pooled_proportion(candidate, control)
    variance = pooled * (1 - pooled) * (1 / candidate.sample_size + 1 / control.sample_size)

    if not variance > 0:
        return 0.0

    se = math.sqrt(variance)
    return abs(candidate.success_rate - control.success_rate) / se


def run_significance_test(
    candidate: VariantMetrics, control: VariantMetrics, confidence_level: float = 95
) -> SignificanceResult:
    threshold = critical_z(confidence_level)

    if (
        candidate.sample_size < MIN_SAMPLE_FOR_SIGNIFICANCE
        or control.sample_size < MIN_SAMPLE_FOR_SIGNIFICANCE
    ):
        return SignificanceResult(has_significance=False, z_score=0.0, p_value=1.0, confidence=0.0)

    z_score = calculate_z_score(candidate, control)

    # Two-tailed p-value
    p_value = 2 * (1 - normal_cdf(abs(z_score)))

    return SignificanceResult(
        has_significance=z_score >= threshold,
        z_score=z_score,
        p_value=p_value,
        confidence=achieved_confidence(z_score),
    )
