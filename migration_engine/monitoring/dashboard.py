"""
Dashboard timeline assembly and Rich rendering.
"""

from datetime import datetime, timedelta
from typing import Dict, Optional, Tuple

from rich import box
from rich.console import Console, Group
from rich.markup import escape
from rich.panel import Panel
from rich.progress_bar import ProgressBar
from rich.table import Table
from rich.text import Text

from migration_engine.core.phase_graph import PhaseGraph
from migration_engine.models.dashboard import Dashboard, TimelineEntry
from migration_engine.models.phase import PhaseStatus
from migration_engine.models.run import AlertSeverity, MigrationRun, RunStatus


def build_timeline(run: MigrationRun, graph: PhaseGraph, now: Optional[datetime] = None) -> list:
    """
    Start/end for every phase, in declared order.

    Recorded times are used where they exist. Otherwise a phase is
    expected to start when its last dependency ends (or now) and to run
    for its estimated duration. Phases blocked by a failed ancestor get
    no estimate.
    """
    now = now or datetime.utcnow()
    phases = {phase.id: phase for phase in run.phases}
    blocked = set(graph.blocked_by_failure({p.id: p.status for p in run.phases}))
    windows: Dict[str, Tuple[Optional[datetime], Optional[datetime], bool, bool]] = {}

    for phase_id in graph.topological_order():
        phase = phases[phase_id]
        duration = timedelta(minutes=phase.estimated_duration_minutes)

        if phase.status in (PhaseStatus.COMPLETED, PhaseStatus.FAILED, PhaseStatus.SKIPPED):
            start = phase.start_time or phase.end_time
            windows[phase_id] = (start, phase.end_time, False, False)
        elif phase.status == PhaseStatus.IN_PROGRESS:
            remaining = duration * ((100.0 - phase.progress) / 100.0)
            windows[phase_id] = (phase.start_time, now + remaining, False, True)
        elif phase_id in blocked:
            windows[phase_id] = (None, None, False, False)
        else:
            dep_ends = [windows[dep][1] for dep in phase.dependencies if windows[dep][1] is not None]
            start = max(dep_ends + [now])
            windows[phase_id] = (start, start + duration, True, True)

    entries = []
    for phase in run.phases:
        start, end, start_estimated, end_estimated = windows[phase.id]
        entries.append(TimelineEntry(
            phase_id=phase.id,
            name=phase.name,
            status=phase.status,
            progress=phase.progress,
            start=start,
            end=end,
            start_estimated=start_estimated,
            end_estimated=end_estimated,
        ))
    return entries


STATUS_STYLES = {
    PhaseStatus.PENDING: "dim",
    PhaseStatus.IN_PROGRESS: "yellow",
    PhaseStatus.COMPLETED: "green",
    PhaseStatus.FAILED: "bold red",
    PhaseStatus.SKIPPED: "blue",
}

RUN_STATUS_STYLES = {
    RunStatus.PENDING: "dim",
    RunStatus.IN_PROGRESS: "yellow",
    RunStatus.PAUSED: "magenta",
    RunStatus.COMPLETED: "green",
    RunStatus.FAILED: "bold red",
}

ALERT_STYLES = {
    AlertSeverity.INFO: "blue",
    AlertSeverity.WARNING: "yellow",
    AlertSeverity.ERROR: "bold red",
}


def format_bytes(size: float) -> str:
    for unit in ("B", "KB", "MB", "GB", "TB"):
        if abs(size) < 1024 or unit == "TB":
            return f"{size:.1f} {unit}" if unit != "B" else f"{int(size)} B"
        size /= 1024
    return f"{size:.1f} TB"


def _format_time(value: Optional[datetime], estimated: bool = False) -> str:
    if value is None:
        return "-"
    text = value.strftime("%Y-%m-%d %H:%M")
    return f"~{text}" if estimated else text


class DashboardRenderer:
    """Renders a Dashboard snapshot to a Rich console."""

    def __init__(self, console: Optional[Console] = None):
        self.console = console or Console()

    def render(self, dashboard: Dashboard):
        self.console.print(self.overview_panel(dashboard))
        self.console.print(self.phase_table(dashboard))
        if dashboard.recent_alerts:
            self.console.print(self.alert_table(dashboard))

    def overview_panel(self, dashboard: Dashboard) -> Panel:
        overview = dashboard.overview
        metrics = dashboard.metrics
        style = RUN_STATUS_STYLES[overview.status]

        text = Text()
        text.append("Status: ", style="bold")
        text.append(f"{overview.status.value}\n", style=style)
        text.append("Current phase: ", style="bold")
        text.append(f"{overview.current_phase or '-'}\n")
        counts = overview.counts
        text.append("Phases: ", style="bold")
        text.append(
            f"{counts.completed} completed, {counts.in_progress} running, {counts.pending} pending, "
            f"{counts.failed} failed, {counts.skipped} skipped (of {counts.total})\n"
        )
        text.append("Failed units: ", style="bold")
        text.append(f"{overview.failed_units}\n", style="bold red" if overview.failed_units else "green")
        text.append("Data migrated: ", style="bold")
        text.append(f"{format_bytes(metrics.total_data_migrated)} at {format_bytes(metrics.migration_speed)}/s\n")
        text.append("Error rate: ", style="bold")
        text.append(f"{metrics.error_rate:.2f}%\n")
        text.append("Estimated completion: ", style="bold")
        text.append(_format_time(overview.estimated_completion, estimated=True))
        if overview.blocked_phases:
            text.append("\nBlocked by failure: ", style="bold red")
            text.append(", ".join(overview.blocked_phases))

        bar = ProgressBar(total=100, completed=overview.overall_progress, width=50)
        return Panel(
            Group(text, Text(f"\nOverall {overview.overall_progress:.1f}%"), bar),
            title=f"Migration {escape(overview.migration_id)}",
            border_style=style,
            padding=(1, 2),
        )

    def phase_table(self, dashboard: Dashboard) -> Table:
        table = Table(
            title="Phases",
            box=box.ROUNDED,
            show_header=True,
            header_style="bold magenta",
        )
        table.add_column("Phase", style="cyan", no_wrap=True)
        table.add_column("Status", justify="center")
        table.add_column("Progress", justify="right")
        table.add_column("Start")
        table.add_column("End")
        table.add_column("Errors", justify="right")
        table.add_column("Warnings", justify="right")

        timeline = {entry.phase_id: entry for entry in dashboard.timeline}
        for phase in dashboard.phases:
            entry = timeline.get(phase.id)
            style = STATUS_STYLES[phase.status]
            status = phase.status.value
            if phase.verification_failed and not phase.verification_acknowledged:
                status = f"{status} (verification failed)"
            table.add_row(
                escape(phase.name),
                f"[{style}]{status}[/{style}]",
                f"{phase.progress:.1f}%",
                _format_time(entry.start, entry.start_estimated) if entry else "-",
                _format_time(entry.end, entry.end_estimated) if entry else "-",
                str(len(phase.errors)),
                str(len(phase.warnings)),
            )
        return table

    def alert_table(self, dashboard: Dashboard) -> Table:
        table = Table(title="Recent alerts", box=box.SIMPLE, show_header=True, header_style="bold")
        table.add_column("Time", style="dim", no_wrap=True)
        table.add_column("Severity")
        table.add_column("Phase", style="cyan")
        table.add_column("Message")
        for alert in dashboard.recent_alerts:
            style = ALERT_STYLES[alert.severity]
            table.add_row(
                alert.timestamp.strftime("%H:%M:%S"),
                f"[{style}]{alert.severity.value}[/{style}]",
                alert.phase_id or "-",
                escape(alert.message),
            )
        return table
