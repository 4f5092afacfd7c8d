from datetime import datetime, timedelta, timezone

import pytest

from app.services.promotion.rules import (
    AGGRESSIVE_RULES,
    DEFAULT_RULES,
    PromotionRules,
    evaluate_rules,
    hours_running,
    rules_for_environment,
)
from app.services.promotion.stats import VariantMetrics
from app.services.promotion.winner import PromotionConfig, find_clear_winner

CONFIG = PromotionConfig(
    min_confidence_level=95,
    min_sample_size=100,
    min_improvement_percent=10,
    max_error_rate=0.05,
)

RULES = PromotionRules(
    max_p95_latency_ms=3000,
    min_test_duration_hours=24,
    max_test_duration_hours=168,
    require_manual_approval=False,
)


def variant(name, rate, error_rate=0.01, p95=None):
    return VariantMetrics(
        variant_name=name,
        sample_size=1000,
        success_rate=rate,
        error_rate=error_rate,
        p95_latency_ms=p95,
    )


def decide(*variants):
    return find_clear_winner(list(variants), CONFIG)


def checks_by_name(recommendation):
    return {check.name: check for check in recommendation.checks}


class TestPresets:
    def test_production_uses_default_rules(self):
        assert rules_for_environment("production") is DEFAULT_RULES
        assert DEFAULT_RULES.require_manual_approval is True

    @pytest.mark.parametrize("environment", ["development", "staging"])
    def test_other_environments_are_aggressive(self, environment):
        assert rules_for_environment(environment) is AGGRESSIVE_RULES
        assert AGGRESSIVE_RULES.require_manual_approval is False

    def test_explicit_preset_wins(self):
        assert rules_for_environment("development", "default") is DEFAULT_RULES

    def test_unknown_preset(self):
        with pytest.raises(ValueError, match="Unknown promotion rules preset"):
            rules_for_environment("production", "reckless")

    def test_merged_ignores_threshold_keys(self):
        rules = RULES.merged({"max_p95_latency_ms": 800, "min_sample_size": 5, "strategy": None})

        assert rules.max_p95_latency_ms == 800
        assert rules.min_test_duration_hours == RULES.min_test_duration_hours

    def test_min_duration_above_max_rejected(self):
        with pytest.raises(ValueError):
            RULES.merged({"min_test_duration_hours": 200})


class TestHoursRunning:
    def test_naive_start_is_utc(self):
        now = datetime(2024, 5, 2, 12, tzinfo=timezone.utc)

        assert hours_running(datetime(2024, 5, 1, 12), now=now) == pytest.approx(24)

    def test_no_start_date(self):
        assert hours_running(None) is None

    def test_defaults_to_current_time(self):
        start = datetime.now(timezone.utc) - timedelta(hours=3)

        assert hours_running(start) == pytest.approx(3, abs=0.01)


class TestEvaluateRules:
    def test_all_checks_pass(self):
        decision = decide(variant("control", 0.20, p95=1000), variant("variant_a", 0.30, p95=1100))

        recommendation = evaluate_rules("prompt_tone_test", decision, RULES, 48)

        assert recommendation.recommendation == "promote"
        assert recommendation.ready is True
        assert all(check.passed for check in recommendation.checks)
        assert set(checks_by_name(recommendation)) == {
            "exclusion_list",
            "clear_winner",
            "error_rate_comparison",
            "winner_latency",
            "latency_comparison",
            "min_test_duration",
            "max_test_duration",
        }

    def test_no_candidate(self):
        decision = decide(variant("variant_a", 0.30), variant("variant_b", 0.25))

        recommendation = evaluate_rules("prompt_tone_test", decision, RULES, 48)

        assert recommendation.recommendation == "not_ready"
        assert recommendation.reason == "No winning variant detected yet"
        assert recommendation.checks == []

    def test_no_clear_winner_is_critical(self):
        decision = decide(variant("control", 0.20), variant("variant_a", 0.205))

        recommendation = evaluate_rules("prompt_tone_test", decision, RULES, 48)

        assert recommendation.recommendation == "not_ready"
        check = checks_by_name(recommendation)["clear_winner"]
        assert check.passed is False
        assert check.severity == "critical"

    def test_error_rate_within_tolerance(self):
        # 10% worse than control is still acceptable
        decision = decide(
            variant("control", 0.20, error_rate=0.020), variant("variant_a", 0.30, error_rate=0.021)
        )

        recommendation = evaluate_rules("prompt_tone_test", decision, RULES, 48)

        assert checks_by_name(recommendation)["error_rate_comparison"].passed is True

    def test_error_rate_worse_than_control(self):
        decision = decide(
            variant("control", 0.20, error_rate=0.01), variant("variant_a", 0.30, error_rate=0.02)
        )

        recommendation = evaluate_rules("prompt_tone_test", decision, RULES, 48)

        assert recommendation.recommendation == "not_ready"
        assert checks_by_name(recommendation)["error_rate_comparison"].passed is False

    def test_latency_above_limit_needs_review(self):
        decision = decide(variant("control", 0.20, p95=2900), variant("variant_a", 0.30, p95=3200))

        recommendation = evaluate_rules("prompt_tone_test", decision, RULES, 48)

        assert recommendation.recommendation == "manual_review"
        checks = checks_by_name(recommendation)
        assert checks["winner_latency"].passed is False
        assert checks["winner_latency"].severity == "warning"
        assert checks["latency_comparison"].passed is True

    def test_latency_worse_than_control_needs_review(self):
        decision = decide(variant("control", 0.20, p95=500), variant("variant_a", 0.30, p95=700))

        recommendation = evaluate_rules("prompt_tone_test", decision, RULES, 48)

        assert recommendation.recommendation == "manual_review"
        assert checks_by_name(recommendation)["latency_comparison"].passed is False

    def test_latency_checks_skipped_without_data(self):
        decision = decide(variant("control", 0.20), variant("variant_a", 0.30))

        recommendation = evaluate_rules("prompt_tone_test", decision, RULES, 48)

        assert "winner_latency" not in checks_by_name(recommendation)
        assert recommendation.recommendation == "promote"

    def test_too_young(self):
        decision = decide(variant("control", 0.20), variant("variant_a", 0.30))

        recommendation = evaluate_rules("prompt_tone_test", decision, RULES, 2)

        assert recommendation.recommendation == "not_ready"
        assert checks_by_name(recommendation)["min_test_duration"].passed is False

    def test_running_too_long_needs_review(self):
        decision = decide(variant("control", 0.20), variant("variant_a", 0.30))

        recommendation = evaluate_rules("prompt_tone_test", decision, RULES, 200)

        assert recommendation.recommendation == "manual_review"
        assert checks_by_name(recommendation)["max_test_duration"].severity == "warning"

    def test_duration_checks_skipped_without_start_date(self):
        decision = decide(variant("control", 0.20), variant("variant_a", 0.30))

        recommendation = evaluate_rules("prompt_tone_test", decision, RULES, None)

        assert "min_test_duration" not in checks_by_name(recommendation)
        assert recommendation.recommendation == "promote"

    def test_excluded_experiment(self):
        decision = decide(variant("control", 0.20), variant("variant_a", 0.30))

        recommendation = evaluate_rules(
            "prompt_tone_test", decision, RULES, 48, excluded_experiments=["prompt_tone_test"]
        )

        assert recommendation.recommendation == "not_ready"
        assert checks_by_name(recommendation)["exclusion_list"].passed is False

    def test_manual_approval_required(self):
        decision = decide(variant("control", 0.20), variant("variant_a", 0.30))
        rules = RULES.merged({"require_manual_approval": True})

        recommendation = evaluate_rules("prompt_tone_test", decision, rules, 48)

        assert recommendation.recommendation == "manual_review"
        assert recommendation.reason == "Manual approval required by promotion rules"
        assert checks_by_name(recommendation)["manual_approval_required"].severity == "info"

    def test_critical_failure_outranks_manual_approval(self):
        decision = decide(variant("control", 0.20), variant("variant_a", 0.30))
        rules = RULES.merged({"require_manual_approval": True})

        recommendation = evaluate_rules("prompt_tone_test", decision, rules, 1)

        assert recommendation.recommendation == "not_ready"
