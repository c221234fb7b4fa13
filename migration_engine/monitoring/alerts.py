"""
Alert sinks.

The progress tracker hands every alert to each registered sink via
``notify``. Sinks are called outside the tracker lock.
"""

import logging
from typing import Optional, Protocol, runtime_checkable

from rich.console import Console
from rich.markup import escape

from migration_engine.models.run import Alert, AlertSeverity

logger = logging.getLogger(__name__)


@runtime_checkable
class AlertSink(Protocol):
    def notify(self, alert: Alert) -> None:
        ...


_LOG_LEVELS = {
    AlertSeverity.INFO: logging.INFO,
    AlertSeverity.WARNING: logging.WARNING,
    AlertSeverity.ERROR: logging.ERROR,
}


class LoggingAlertSink:
    """Writes alerts to a logger at the matching level."""

    def __init__(self, log: Optional[logging.Logger] = None):
        self.log = log or logging.getLogger("migration_engine.alerts")

    def notify(self, alert: Alert) -> None:
        scope = f"[{alert.phase_id}] " if alert.phase_id else ""
        self.log.log(_LOG_LEVELS[alert.severity], f"{scope}{alert.message}")


class ConsoleAlertSink:
    """Prints alerts to a Rich console."""

    STYLES = {
        AlertSeverity.INFO: "blue",
        AlertSeverity.WARNING: "yellow",
        AlertSeverity.ERROR: "bold red",
    }

    def __init__(self, console: Optional[Console] = None, min_severity: AlertSeverity = AlertSeverity.INFO):
        self.console = console or Console()
        self.min_severity = min_severity

    def notify(self, alert: Alert) -> None:
        order = list(AlertSeverity)
        if order.index(alert.severity) < order.index(self.min_severity):
            return
        style = self.STYLES[alert.severity]
        scope = f" [dim]{alert.phase_id}[/dim]" if alert.phase_id else ""
        self.console.print(
            f"[{style}]{alert.severity.value.upper()}[/{style}]{scope} {escape(alert.message)}"
        )
