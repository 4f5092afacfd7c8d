"""
Structured promotion alerts.

Every traffic change the promotion engine makes, and every failure around
one, is emitted as a structured log event that a log aggregator (DataDog,
CloudWatch, ...) can route to operators. Delivery beyond the log stream is
left to that aggregator.

Usage:
    from observability.alerts import get_alert_manager

    get_alert_manager().emit_promotion_applied(
        experiment_name="prompt_v2_rollout",
        winner_variant="concise_prompt",
        strategy="immediate",
        audit_log_id="...",
    )
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Optional

import structlog


class AlertSeverity(Enum):
    """Alert severity levels."""

    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class AlertType(Enum):
    """Types of alerts the promotion engine emits."""

    PROMOTION_APPLIED = "promotion_applied"
    PROMOTION_FAILED = "promotion_failed"
    PROMOTION_ROLLED_BACK = "promotion_rolled_back"
    CONCURRENT_PROMOTION = "concurrent_promotion"
    ARCHIVE_FAILED = "archive_failed"
    SWEEP_FAILURE = "sweep_failure"
    MANUAL_REVIEW_REQUIRED = "manual_review_required"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Alert:
    """
    A single alert event.

    ``alert_id`` is derived from type, experiment and hour so repeats of the
    same problem within an hour collapse into one.
    """

    alert_type: AlertType
    severity: AlertSeverity
    experiment_name: str
    message: str
    details: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=_utcnow)
    alert_id: Optional[str] = None

    def __post_init__(self):
        if self.alert_id is None:
            key_parts = [
                self.alert_type.value,
                self.experiment_name,
                self.timestamp.strftime("%Y%m%d%H"),  # Hour granularity
            ]
            self.alert_id = "_".join(key_parts)

    def to_structured_log(self) -> dict[str, Any]:
        return {
            "event": "ALERT",
            "alert_id": self.alert_id,
            "alert_type": self.alert_type.value,
            "severity": self.severity.value,
            "experiment": self.experiment_name,
            "message": self.message,
            **self.details,
        }


class AlertManager:
    """Emits alerts as structured log events, suppressing duplicates."""

    def __init__(self, throttle_minutes: int = 15):
        self.throttle_minutes = throttle_minutes
        self._recent_alerts: dict[str, datetime] = {}
        self.logger = structlog.get_logger("alerts")

    def _should_throttle(self, alert: Alert) -> bool:
        last_sent = self._recent_alerts.get(alert.alert_id)
        if last_sent is None:
            return False
        return _utcnow() - last_sent < timedelta(minutes=self.throttle_minutes)

    def _update_throttle_cache(self, alert: Alert):
        self._recent_alerts[alert.alert_id] = _utcnow()

        # Clean old entries (older than 1 hour)
        cutoff = _utcnow() - timedelta(hours=1)
        self._recent_alerts = {k: v for k, v in self._recent_alerts.items() if v > cutoff}

    def emit(self, alert: Alert, force: bool = False) -> bool:
        """
        Emit an alert.

        Returns:
            True if the alert was emitted, False if it was throttled
        """
        if not force and self._should_throttle(alert):
            self.logger.debug(
                "alert_throttled",
                alert_id=alert.alert_id,
                alert_type=alert.alert_type.value,
            )
            return False

        log_data = alert.to_structured_log()

        if alert.severity == AlertSeverity.CRITICAL:
            self.logger.critical(**log_data)
        elif alert.severity == AlertSeverity.WARNING:
            self.logger.warning(**log_data)
        else:
            self.logger.info(**log_data)

        self._update_throttle_cache(alert)
        return True

    def emit_promotion_applied(
        self,
        experiment_name: str,
        winner_variant: str,
        strategy: str,
        audit_log_id: str,
        **details,
    ) -> bool:
        # Every promotion is its own event, never deduplicated
        return self.emit(
            Alert(
                alert_type=AlertType.PROMOTION_APPLIED,
                severity=AlertSeverity.INFO,
                experiment_name=experiment_name,
                message=f"Variant {winner_variant} promoted ({strategy})",
                details={
                    "winner_variant": winner_variant,
                    "strategy": strategy,
                    "audit_log_id": audit_log_id,
                    **details,
                },
            ),
            force=True,
        )

    def emit_promotion_failed(self, experiment_name: str, error: str, **details) -> bool:
        return self.emit(
            Alert(
                alert_type=AlertType.PROMOTION_FAILED,
                severity=AlertSeverity.CRITICAL,
                experiment_name=experiment_name,
                message=f"Promotion failed for {experiment_name}: {error}",
                details={"error": error, **details},
            ),
            force=True,
        )

    def emit_concurrent_promotion(self, experiment_name: str, **details) -> bool:
        return self.emit(
            Alert(
                alert_type=AlertType.CONCURRENT_PROMOTION,
                severity=AlertSeverity.WARNING,
                experiment_name=experiment_name,
                message=f"Concurrent traffic change rejected for {experiment_name}",
                details=details,
            )
        )

    def emit_rollback(
        self, experiment_name: str, reason: str, audit_log_id: str, **details
    ) -> bool:
        return self.emit(
            Alert(
                alert_type=AlertType.PROMOTION_ROLLED_BACK,
                severity=AlertSeverity.WARNING,
                experiment_name=experiment_name,
                message=f"Promotion rolled back for {experiment_name}: {reason}",
                details={"reason": reason, "audit_log_id": audit_log_id, **details},
            ),
            force=True,
        )

    def emit_archive_failed(self, experiment_name: str, winner_variant: str, **details) -> bool:
        return self.emit(
            Alert(
                alert_type=AlertType.ARCHIVE_FAILED,
                severity=AlertSeverity.WARNING,
                experiment_name=experiment_name,
                message=f"Could not archive losing variants of {experiment_name}",
                details={"winner_variant": winner_variant, **details},
            )
        )

    def emit_sweep_failure(self, experiment_name: str, error: str) -> bool:
        return self.emit(
            Alert(
                alert_type=AlertType.SWEEP_FAILURE,
                severity=AlertSeverity.WARNING,
                experiment_name=experiment_name,
                message=f"Auto-promotion sweep failed for {experiment_name}: {error}",
                details={"error": error},
            )
        )


    def emit_manual_review_required(self, experiment_name: str, reason: str, **details) -> bool:
        return self.emit(
            Alert(
                alert_type=AlertType.MANUAL_REVIEW_REQUIRED,
                severity=AlertSeverity.INFO,
                experiment_name=experiment_name,
                message=f"{experiment_name} has a winner awaiting manual review: {reason}",
                details={"reason": reason, **details},
            )
        )

# Singleton instance for convenience
_default_manager: Optional[AlertManager] = None


def get_alert_manager() -> AlertManager:
    """Get or create the default AlertManager instance."""
    global _default_manager
    if _default_manager is None:
        from app.config import get_settings

        _default_manager = AlertManager(throttle_minutes=get_settings().ALERT_THROTTLE_MINUTES)
    return _default_manager
