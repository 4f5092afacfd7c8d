"""
Clear-winner policy.

A candidate is promoted only when every guardrail passes: both arms have
enough samples, the difference is statistically significant at the requested
confidence, the relative lift clears the minimum, and the candidate's error
rate stays under the ceiling. A single failure blocks promotion no matter how
strong the other signals are.
"""

import dataclasses
import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from app.services.promotion.policy import (
    CONTROL_VARIANT_NAME,
    STRATEGIES,
    STRATEGY_IMMEDIATE,
    critical_z,
)
from app.services.promotion.stats import SignificanceResult, VariantMetrics, run_significance_test


@dataclass
class PromotionConfig:
    min_confidence_level: float
    min_sample_size: int
    min_improvement_percent: float
    max_error_rate: float
    strategy: str = STRATEGY_IMMEDIATE
    archive_losing_variants: bool = True

    def __post_init__(self):
        critical_z(self.min_confidence_level)
        if self.strategy not in STRATEGIES:
            raise ValueError(f"Unsupported promotion strategy: {self.strategy}")

    def merged(self, overrides: Optional[Mapping[str, Any]]) -> "PromotionConfig":
        """Copy with the non-None overrides applied."""
        if not overrides:
            return self
        changes = {k: v for k, v in overrides.items() if v is not None}
        return dataclasses.replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)


@dataclass
class SafetyChecks:
    candidate_sample_size: bool
    control_sample_size: bool
    statistical_significance: bool
    minimum_improvement: bool
    error_rate: bool

    @property
    def all_passed(self) -> bool:
        return all(dataclasses.astuple(self))

    def to_dict(self) -> Dict[str, bool]:
        return dataclasses.asdict(self)


@dataclass
class ClearWinnerResult:
    has_winner: bool
    winner_variant: Optional[VariantMetrics]
    control_variant: Optional[VariantMetrics]
    confidence: float
    improvement: float
    reasons: List[str] = field(default_factory=list)
    # Best non-control arm, populated even when it does not qualify
    candidate_variant: Optional[VariantMetrics] = None
    significance: Optional[SignificanceResult] = None
    safety_checks: Optional[SafetyChecks] = None


def calculate_improvement(candidate_rate: float, control_rate: float) -> float:
    """
    Relative lift in percent.

    A zero control rate yields IEEE semantics (inf, -inf or nan) instead of
    raising, so callers see the same value a float division would produce.
    """
    diff = candidate_rate - control_rate
    if control_rate == 0:
        if diff == 0 or math.isnan(diff):
            return math.nan
        return math.copysign(math.inf, diff)
    return (diff / control_rate) * 100


def find_control(variants: List[VariantMetrics]) -> Optional[VariantMetrics]:
    for variant in variants:
        if variant.variant_name.lower() == CONTROL_VARIANT_NAME:
            return variant
    return None


def find_clear_winner(variants: List[VariantMetrics], config: PromotionConfig) -> ClearWinnerResult:
    control = find_control(variants)
    if control is None:
        return ClearWinnerResult(
            has_winner=False,
            winner_variant=None,
            control_variant=None,
            confidence=0.0,
            improvement=0.0,
            reasons=["No control variant found"],
        )

    candidates = [v for v in variants if v.variant_name != control.variant_name]
    if not candidates:
        return ClearWinnerResult(
            has_winner=False,
            winner_variant=None,
            control_variant=control,
            confidence=0.0,
            improvement=0.0,
            reasons=["No variant candidates found"],
        )

    # First arm wins ties
    best = candidates[0]
    for candidate in candidates[1:]:
        if candidate.success_rate > best.success_rate:
            best = candidate

    significance = run_significance_test(best, control, config.min_confidence_level)
    improvement = calculate_improvement(best.success_rate, control.success_rate)

    checks = SafetyChecks(
        candidate_sample_size=best.sample_size >= config.min_sample_size,
        control_sample_size=control.sample_size >= config.min_sample_size,
        statistical_significance=significance.has_significance,
        minimum_improvement=improvement >= config.min_improvement_percent,
        error_rate=best.error_rate <= config.max_error_rate,
    )

    reasons = []
    if best.sample_size < config.min_sample_size:
        reasons.append(
            f"Insufficient sample size: {best.sample_size} < {config.min_sample_size}"
        )
    if control.sample_size < config.min_sample_size:
        reasons.append(
            f"Insufficient control sample: {control.sample_size} < {config.min_sample_size}"
        )
    if not significance.has_significance:
        reasons.append(
            f"Statistical significance not reached "
            f"(z-score: {significance.z_score:.3f}, confidence: {significance.confidence:g}%)"
        )
    # nan compares False both ways, so an undefined lift adds no reason but still blocks
    if improvement < config.min_improvement_percent:
        reasons.append(
            f"Improvement {improvement:.2f}% below threshold {config.min_improvement_percent:g}%"
        )
    if best.error_rate > config.max_error_rate:
        reasons.append(
            f"Error rate {best.error_rate * 100:.2f}% exceeds max {config.max_error_rate * 100:.2f}%"
        )

    has_winner = checks.all_passed

    return ClearWinnerResult(
        has_winner=has_winner,
        winner_variant=best if has_winner else None,
        control_variant=control,
        confidence=significance.confidence,
        improvement=improvement,
        reasons=[f"Variant {best.variant_name} is a clear winner"] if has_winner else reasons,
        candidate_variant=best,
        significance=significance,
        safety_checks=checks,
    )
