"""
Operational promotion rules layered over the clear-winner decision.

The clear-winner policy answers "is there a statistically sound winner".
These rules answer "should it be promoted now": latency against an absolute
ceiling and against control, error rate against control, how long the test
has been running, the exclusion list and whether a human has to sign off.
The outcome is a recommendation:

- ``promote``: every check passed, safe to promote without review
- ``manual_review``: a warning-level check failed or approval is required
- ``wait``: nothing critical failed but not every check passed either
- ``not_ready``: a critical check failed, or there is no winner candidate yet

Automatic promotions only proceed on ``promote``; manual promotions are
gated by the clear-winner decision alone.
"""

import dataclasses
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional

from app.services.promotion.winner import ClearWinnerResult

SEVERITY_INFO = "info"
SEVERITY_WARNING = "warning"
SEVERITY_CRITICAL = "critical"

RECOMMEND_PROMOTE = "promote"
RECOMMEND_WAIT = "wait"
RECOMMEND_MANUAL_REVIEW = "manual_review"
RECOMMEND_NOT_READY = "not_ready"

# Winner may be this much worse than control before the comparison fails
ERROR_RATE_TOLERANCE = 0.10
LATENCY_TOLERANCE = 0.20


@dataclass
class PromotionRules:
    max_p95_latency_ms: float
    min_test_duration_hours: float
    max_test_duration_hours: float
    require_manual_approval: bool

    def __post_init__(self):
        if self.min_test_duration_hours > self.max_test_duration_hours:
            raise ValueError("min_test_duration_hours must not exceed max_test_duration_hours")

    def merged(self, overrides: Optional[Mapping[str, Any]]) -> "PromotionRules":
        """Copy with the non-None overrides that name a rule applied; other keys are ignored."""
        if not overrides:
            return self
        names = {f.name for f in dataclasses.fields(self)}
        changes = {k: v for k, v in overrides.items() if k in names and v is not None}
        return dataclasses.replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)


# Conservative: production
DEFAULT_RULES = PromotionRules(
    max_p95_latency_ms=3000,
    min_test_duration_hours=24,
    max_test_duration_hours=168,
    require_manual_approval=True,
)

# Fast iteration: everything else
AGGRESSIVE_RULES = PromotionRules(
    max_p95_latency_ms=5000,
    min_test_duration_hours=1,
    max_test_duration_hours=72,
    require_manual_approval=False,
)

RULE_PRESETS = {"default": DEFAULT_RULES, "aggressive": AGGRESSIVE_RULES}


def rules_for_environment(environment: str, preset: Optional[str] = None) -> PromotionRules:
    if preset:
        try:
            return RULE_PRESETS[preset]
        except KeyError:
            raise ValueError(f"Unknown promotion rules preset: {preset}") from None
    return DEFAULT_RULES if environment == "production" else AGGRESSIVE_RULES


@dataclass
class RuleCheck:
    name: str
    passed: bool
    severity: str
    message: str
    value: Optional[float] = None
    threshold: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)


@dataclass
class Recommendation:
    recommendation: str
    reason: str
    checks: List[RuleCheck] = field(default_factory=list)

    @property
    def ready(self) -> bool:
        return self.recommendation == RECOMMEND_PROMOTE


def hours_running(
    start_date: Optional[datetime], now: Optional[datetime] = None
) -> Optional[float]:
    if start_date is None:
        return None
    if start_date.tzinfo is None:
        start_date = start_date.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    return (now - start_date).total_seconds() / 3600


def _check(name, passed, failed_severity, ok_message, failed_message, value=None, threshold=None):
    return RuleCheck(
        name=name,
        passed=passed,
        severity=SEVERITY_INFO if passed else failed_severity,
        message=ok_message if passed else failed_message,
        value=value,
        threshold=threshold,
    )


def evaluate_rules(
    experiment_name: str,
    decision: ClearWinnerResult,
    rules: PromotionRules,
    duration_hours: Optional[float],
    excluded_experiments: Iterable[str] = (),
) -> Recommendation:
    """
    Run the operational checks for the best candidate against control.

    Checks whose input is missing (no latency reported, no start date) are
    left out rather than failed.
    """
    candidate = decision.winner_variant or decision.candidate_variant
    control = decision.control_variant
    if candidate is None or control is None:
        return Recommendation(RECOMMEND_NOT_READY, "No winning variant detected yet")

    checks = []

    excluded = experiment_name in set(excluded_experiments)
    checks.append(
        _check(
            "exclusion_list",
            not excluded,
            SEVERITY_CRITICAL,
            "Experiment is eligible for auto-promotion",
            "Experiment is on auto-promotion exclusion list",
        )
    )

    checks.append(
        _check(
            "clear_winner",
            decision.has_winner,
            SEVERITY_CRITICAL,
            f"Variant {candidate.variant_name} passed the clear-winner policy",
            "; ".join(decision.reasons) or "No clear winner",
            value=decision.confidence,
        )
    )

    error_ceiling = control.error_rate * (1 + ERROR_RATE_TOLERANCE)
    checks.append(
        _check(
            "error_rate_comparison",
            candidate.error_rate <= error_ceiling,
            SEVERITY_CRITICAL,
            "Winner error rate comparable to control",
            "Winner error rate significantly worse than control",
            value=candidate.error_rate,
            threshold=control.error_rate,
        )
    )

    if candidate.p95_latency_ms is not None:
        checks.append(
            _check(
                "winner_latency",
                candidate.p95_latency_ms <= rules.max_p95_latency_ms,
                SEVERITY_WARNING,
                f"Winner P95 latency {candidate.p95_latency_ms:.0f}ms within limit",
                f"Winner P95 latency {candidate.p95_latency_ms:.0f}ms exceeds limit "
                f"{rules.max_p95_latency_ms:g}ms",
                value=candidate.p95_latency_ms,
                threshold=rules.max_p95_latency_ms,
            )
        )
        if control.p95_latency_ms is not None:
            checks.append(
                _check(
                    "latency_comparison",
                    candidate.p95_latency_ms <= control.p95_latency_ms * (1 + LATENCY_TOLERANCE),
                    SEVERITY_WARNING,
                    "Winner latency comparable to control",
                    "Winner latency significantly worse than control",
                    value=candidate.p95_latency_ms,
                    threshold=control.p95_latency_ms,
                )
            )

    if duration_hours is not None:
        checks.append(
            _check(
                "min_test_duration",
                duration_hours >= rules.min_test_duration_hours,
                SEVERITY_CRITICAL,
                f"Test duration {duration_hours:.1f}h meets minimum "
                f"{rules.min_test_duration_hours:g}h",
                f"Test duration {duration_hours:.1f}h below minimum "
                f"{rules.min_test_duration_hours:g}h",
                value=duration_hours,
                threshold=rules.min_test_duration_hours,
            )
        )
        checks.append(
            _check(
                "max_test_duration",
                duration_hours <= rules.max_test_duration_hours,
                SEVERITY_WARNING,
                f"Test duration {duration_hours:.1f}h within limit",
                f"Test running for {duration_hours:.1f}h, manual review recommended",
                value=duration_hours,
                threshold=rules.max_test_duration_hours,
            )
        )

    if rules.require_manual_approval:
        checks.append(
            RuleCheck(
                name="manual_approval_required",
                passed=False,
                severity=SEVERITY_INFO,
                message="Manual approval is required by promotion rules",
            )
        )

    failed = [c for c in checks if not c.passed]
    critical = [c for c in failed if c.severity == SEVERITY_CRITICAL]
    warnings = [c for c in failed if c.severity == SEVERITY_WARNING]

    if critical:
        return Recommendation(
            RECOMMEND_NOT_READY, f"{len(critical)} critical safety check(s) failed", checks
        )
    if rules.require_manual_approval:
        return Recommendation(
            RECOMMEND_MANUAL_REVIEW, "Manual approval required by promotion rules", checks
        )
    if warnings:
        return Recommendation(
            RECOMMEND_MANUAL_REVIEW,
            f"{len(warnings)} warning-level check(s) failed, manual review recommended",
            checks,
        )
    if not failed:
        return Recommendation(
            RECOMMEND_PROMOTE, "All safety checks passed, ready for auto-promotion", checks
        )
    return Recommendation(RECOMMEND_WAIT, "Continue monitoring, not ready for promotion", checks)
