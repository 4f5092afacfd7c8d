"""
Observability for the promotion engine: structured, throttled alerts emitted
through structlog.
"""

from observability.alerts import Alert, AlertManager, AlertSeverity, AlertType, get_alert_manager

__all__ = [
    "Alert",
    "AlertManager",
    "AlertSeverity",
    "AlertType",
    "get_alert_manager",
]
