import math

import pytest

from app.services.promotion.stats import VariantMetrics
from app.services.promotion.winner import (
    PromotionConfig,
    calculate_improvement,
    find_clear_winner,
    find_control,
)


def variant(name, n, rate, error_rate=0.01):
    return VariantMetrics(variant_name=name, sample_size=n, success_rate=rate, error_rate=error_rate)


@pytest.fixture
def config():
    return PromotionConfig(
        min_confidence_level=95,
        min_sample_size=100,
        min_improvement_percent=10,
        max_error_rate=0.05,
    )


class TestPromotionConfig:
    def test_rejects_unsupported_confidence(self):
        with pytest.raises(ValueError):
            PromotionConfig(
                min_confidence_level=97, min_sample_size=100, min_improvement_percent=5, max_error_rate=0.05
            )

    def test_rejects_unknown_strategy(self):
        with pytest.raises(ValueError):
            PromotionConfig(
                min_confidence_level=95,
                min_sample_size=100,
                min_improvement_percent=5,
                max_error_rate=0.05,
                strategy="canary",
            )

    def test_merged_ignores_none(self, config):
        merged = config.merged({"min_improvement_percent": 50, "max_error_rate": None})

        assert merged.min_improvement_percent == 50
        assert merged.max_error_rate == 0.05
        assert config.min_improvement_percent == 10

    def test_merged_validates(self, config):
        with pytest.raises(ValueError):
            config.merged({"min_confidence_level": 42})


class TestImprovement:
    def test_relative_lift(self):
        assert calculate_improvement(0.28, 0.20) == pytest.approx(40.0)
        assert calculate_improvement(0.15, 0.20) == pytest.approx(-25.0)

    def test_zero_control_rate(self):
        assert calculate_improvement(0.1, 0.0) == math.inf
        assert math.isnan(calculate_improvement(0.0, 0.0))


class TestFindControl:
    def test_case_insensitive(self):
        variants = [variant("variant_a", 100, 0.3), variant("Control", 100, 0.2)]
        assert find_control(variants).variant_name == "Control"

    def test_missing(self):
        assert find_control([variant("a", 100, 0.3), variant("b", 100, 0.2)]) is None


class TestFindClearWinner:
    def test_clear_winner(self, config):
        result = find_clear_winner(
            [variant("control", 500, 0.20), variant("variant_a", 520, 0.28, error_rate=0.01)], config
        )

        assert result.has_winner is True
        assert result.winner_variant.variant_name == "variant_a"
        assert result.control_variant.variant_name == "control"
        assert result.improvement == pytest.approx(40.0)
        # Z is about 2.99, so the achieved tier is 99 (at or above the requested 95)
        assert result.confidence >= 95
        assert result.confidence == 99
        assert result.reasons == ["Variant variant_a is a clear winner"]
        assert result.safety_checks.all_passed

    def test_improvement_below_threshold(self, config):
        config = config.merged({"min_improvement_percent": 50})
        result = find_clear_winner(
            [variant("control", 500, 0.20), variant("variant_a", 520, 0.28)], config
        )

        assert result.has_winner is False
        assert result.winner_variant is None
        assert any("Improvement 40.00% below threshold 50%" in r for r in result.reasons)
        assert result.safety_checks.minimum_improvement is False
        assert result.safety_checks.statistical_significance is True

    def test_insufficient_candidate_sample(self, config):
        result = find_clear_winner(
            [variant("control", 500, 0.20), variant("variant_a", 20, 0.28)], config
        )

        assert result.has_winner is False
        assert "Insufficient sample size: 20 < 100" in result.reasons
        assert any("Statistical significance not reached" in r for r in result.reasons)
        assert result.confidence == 0

    def test_insufficient_control_sample(self, config):
        result = find_clear_winner(
            [variant("control", 50, 0.20), variant("variant_a", 5000, 0.28)], config
        )

        assert result.has_winner is False
        assert "Insufficient control sample: 50 < 100" in result.reasons

    def test_error_rate_blocks_strong_winner(self, config):
        result = find_clear_winner(
            [variant("control", 5000, 0.20), variant("variant_a", 5000, 0.40, error_rate=0.08)],
            config,
        )

        assert result.has_winner is False
        assert result.confidence == 99.9
        assert "Error rate 8.00% exceeds max 5.00%" in result.reasons
        assert result.candidate_variant.variant_name == "variant_a"

    def test_no_control(self, config):
        result = find_clear_winner([variant("a", 500, 0.2), variant("b", 500, 0.3)], config)

        assert result.has_winner is False
        assert result.reasons == ["No control variant found"]
        assert result.confidence == 0
        assert result.improvement == 0

    def test_control_only(self, config):
        result = find_clear_winner([variant("control", 500, 0.2)], config)

        assert result.has_winner is False
        assert result.reasons == ["No variant candidates found"]
        assert result.control_variant is not None

    def test_best_candidate_is_highest_success_rate(self, config):
        result = find_clear_winner(
            [
                variant("control", 2000, 0.20),
                variant("variant_a", 2000, 0.24),
                variant("variant_b", 2000, 0.30),
                variant("variant_c", 2000, 0.22),
            ],
            config,
        )

        assert result.winner_variant.variant_name == "variant_b"

    def test_first_candidate_wins_ties(self, config):
        result = find_clear_winner(
            [
                variant("control", 2000, 0.20),
                variant("variant_a", 2000, 0.30),
                variant("variant_b", 2000, 0.30),
            ],
            config,
        )

        assert result.winner_variant.variant_name == "variant_a"

    def test_significant_loser_is_not_a_winner(self, config):
        result = find_clear_winner(
            [variant("control", 5000, 0.30), variant("variant_a", 5000, 0.20)], config
        )

        # Z-score is absolute, but a negative lift still fails the improvement guardrail
        assert result.significance.has_significance is True
        assert result.has_winner is False
        assert result.improvement == pytest.approx(-33.33, abs=0.01)

    def test_zero_control_rate_with_successful_candidate(self, config):
        result = find_clear_winner(
            [variant("control", 1000, 0.0), variant("variant_a", 1000, 0.05)], config
        )

        assert result.improvement == math.inf
        assert result.has_winner is True

    def test_zero_rates_everywhere(self, config):
        result = find_clear_winner(
            [variant("control", 1000, 0.0), variant("variant_a", 1000, 0.0)], config
        )

        assert math.isnan(result.improvement)
        assert result.has_winner is False
        assert result.safety_checks.minimum_improvement is False
        assert not any(r.startswith("Improvement") for r in result.reasons)
