from datetime import datetime, timezone

from observability.alerts import Alert, AlertManager, AlertSeverity, AlertType


def make_alert(experiment_name="prompt_tone_test", **kwargs):
    return Alert(
        alert_type=AlertType.CONCURRENT_PROMOTION,
        severity=AlertSeverity.WARNING,
        experiment_name=experiment_name,
        message="Concurrent traffic change rejected",
        **kwargs,
    )


class TestAlert:
    def test_alert_id_has_hour_granularity(self):
        alert = make_alert(timestamp=datetime(2024, 5, 1, 13, 45, tzinfo=timezone.utc))

        assert alert.alert_id == "concurrent_promotion_prompt_tone_test_2024050113"

    def test_structured_log(self):
        alert = make_alert(details={"experiment_id": "exp-1"})
        log = alert.to_structured_log()

        assert log["event"] == "ALERT"
        assert log["severity"] == "warning"
        assert log["experiment"] == "prompt_tone_test"
        assert log["experiment_id"] == "exp-1"


class TestAlertManager:
    def test_duplicate_alerts_are_throttled(self):
        manager = AlertManager(throttle_minutes=15)

        assert manager.emit_concurrent_promotion("prompt_tone_test") is True
        assert manager.emit_concurrent_promotion("prompt_tone_test") is False
        assert manager.emit_concurrent_promotion("other_experiment") is True

    def test_promotion_events_are_never_throttled(self):
        manager = AlertManager(throttle_minutes=15)

        for _ in range(3):
            assert manager.emit_promotion_applied(
                "prompt_tone_test", "variant_a", "immediate", audit_log_id="log-1"
            )
            assert manager.emit_rollback("prompt_tone_test", reason="regression", audit_log_id="log-1")
            assert manager.emit_promotion_failed("prompt_tone_test", "disk full")

    def test_zero_throttle_window(self):
        manager = AlertManager(throttle_minutes=0)

        assert manager.emit_archive_failed("prompt_tone_test", "variant_a") is True
        assert manager.emit_archive_failed("prompt_tone_test", "variant_a") is True

    def test_sweep_failure(self):
        manager = AlertManager()

        assert manager.emit_sweep_failure("prompt_tone_test", "timed out") is True
        assert manager.emit_sweep_failure("prompt_tone_test", "timed out") is False

    def test_manual_review_reminder_is_throttled(self):
        manager = AlertManager()

        assert manager.emit_manual_review_required("prompt_tone_test", "approval required") is True
        assert manager.emit_manual_review_required("prompt_tone_test", "approval required") is False
