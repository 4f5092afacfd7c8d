"""
Experiment promotion engine.

This package provides:
- Two-proportion Z-test significance checks over live variant metrics
- The clear-winner policy that gates automatic promotion
- Traffic mutation, audit logging and rollback (see ``service``)
"""

from app.services.promotion.stats import (
    SignificanceResult,
    VariantMetrics,
    calculate_z_score,
    run_significance_test,
)
from app.services.promotion.winner import (
    ClearWinnerResult,
    PromotionConfig,
    SafetyChecks,
    calculate_improvement,
    find_clear_winner,
)

__all__ = [
    "VariantMetrics",
    "SignificanceResult",
    "calculate_z_score",
    "run_significance_test",
    "PromotionConfig",
    "SafetyChecks",
    "ClearWinnerResult",
    "calculate_improvement",
    "find_clear_winner",
]
