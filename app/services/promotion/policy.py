"""
Constants behind the promotion decision.

Kept in one place so the statistical contract can be audited and tested
without reading the decision code.
"""

# Two-tailed critical Z values keyed by confidence level (percent)
CONFIDENCE_Z_THRESHOLDS = {
    90: 1.645,
    95: 1.96,
    99: 2.576,
    99.9: 3.291,
}

SUPPORTED_CONFIDENCE_LEVELS = tuple(sorted(CONFIDENCE_Z_THRESHOLDS))

# Below this many observations per arm the normal approximation is not trusted
MIN_SAMPLE_FOR_SIGNIFICANCE = 30

CONTROL_VARIANT_NAME = "control"

TRAFFIC_TOTAL = 100.0
TRAFFIC_TOLERANCE = 0.01
IMMEDIATE_WINNER_TRAFFIC = 100.0
GRADUAL_WINNER_TRAFFIC = 75.0

STRATEGY_IMMEDIATE = "immediate"
STRATEGY_GRADUAL = "gradual"
STRATEGIES = (STRATEGY_IMMEDIATE, STRATEGY_GRADUAL)

PROMOTION_TYPE_AUTO = "auto"
PROMOTION_TYPE_MANUAL = "manual"


def critical_z(confidence_level: float) -> float:
    try:
        return CONFIDENCE_Z_THRESHOLDS[confidence_level]
    except KeyError:
        raise ValueError(
            f"Unsupported confidence level {confidence_level}; "
            f"expected one of {list(SUPPORTED_CONFIDENCE_LEVELS)}"
        ) from None


def achieved_confidence(z_score: float) -> float:
    """Strictest confidence tier whose critical value the Z-score reaches, else 0."""
    for level in sorted(CONFIDENCE_Z_THRESHOLDS, reverse=True):
        if z_score >= CONFIDENCE_Z_THRESHOLDS[level]:
            return float(level)
    return 0.0
