"""
Main CLI entry point for the Migration Engine.

Commands operate on the run described by a plan file. Run state is kept
in a state directory (one JSON document per run) or in Redis.

Exit codes: 0 success, 1 partial failure or incomplete run,
2 configuration error, 3 runtime failure.
"""

import asyncio
import functools
import sys
from typing import Dict, Optional, Tuple

import click
from pydantic import ValidationError
from rich import box
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from migration_engine import __version__
from migration_engine.core.exceptions import ConfigurationError, InvalidTransition, MigrationEngineError
from migration_engine.models.config import EngineSettings
from migration_engine.models.phase import PhaseStatus
from migration_engine.models.plan import MigrationPlan
from migration_engine.monitoring.alerts import LoggingAlertSink
from migration_engine.monitoring.dashboard import DashboardRenderer, format_bytes
from migration_engine.monitoring.progress_tracker import ProgressTracker
from migration_engine.orchestrator.orchestrator import MigrationOrchestrator, RunSummary
from migration_engine.persistence.store import JsonFileRunStore, RedisRunStore, RunStore
from migration_engine.utils.logging import AuditLogger, setup_logging
from migration_engine.workers.base import PlanSummary

console = Console()

EXIT_SUCCESS = 0
EXIT_INCOMPLETE = 1
EXIT_CONFIGURATION_ERROR = 2
EXIT_RUNTIME_FAILURE = 3


def ctx_log_level() -> Optional[str]:
    ctx = click.get_current_context(silent=True)
    if ctx is None or ctx.obj is None:
        return None
    level = ctx.obj.get("log_level")
    return level.upper() if level else None


def handle_errors(func):
    """Map engine errors to exit codes."""

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except (ConfigurationError, InvalidTransition) as e:
            console.print(f"[red]Error:[/red] {escape(e.message)}")
            sys.exit(EXIT_CONFIGURATION_ERROR)
        except MigrationEngineError as e:
            console.print(f"[red]Migration failed:[/red] {escape(e.message)}")
            sys.exit(EXIT_RUNTIME_FAILURE)
        except KeyboardInterrupt:
            console.print("\n[yellow]Interrupted[/yellow]")
            sys.exit(EXIT_INCOMPLETE)
        except Exception as e:
            console.print(f"[red]Unexpected error:[/red] {escape(str(e))}")
            if ctx_log_level() == "DEBUG":
                console.print_exception()
            sys.exit(EXIT_RUNTIME_FAILURE)

    return wrapper


def _load_plan(ctx: click.Context) -> MigrationPlan:
    return MigrationPlan.from_file(ctx.obj["plan_file"])


def _build_settings(ctx: click.Context, plan: MigrationPlan, **overrides) -> EngineSettings:
    values = dict(plan.settings)
    values.update({k: v for k, v in overrides.items() if v is not None})
    if ctx.obj.get("state_dir"):
        values["state_dir"] = ctx.obj["state_dir"]
    if ctx.obj.get("log_level"):
        values["log_level"] = ctx.obj["log_level"]
    try:
        return EngineSettings.from_env(**values)
    except ValidationError as e:
        raise ConfigurationError(
            f"Invalid settings: {e.error_count()} error(s)",
            details={"errors": e.errors(include_url=False)}
        ) from e


def _build_store(ctx: click.Context, settings: EngineSettings) -> RunStore:
    redis_url = ctx.obj.get("redis_url")
    if redis_url:
        return RedisRunStore.from_url(redis_url)
    return JsonFileRunStore(settings.state_dir)


def _build_tracker(ctx: click.Context, plan: MigrationPlan, settings: EngineSettings,
                   persist: bool = True) -> ProgressTracker:
    return ProgressTracker(
        store=_build_store(ctx, settings) if persist else None,
        settings=settings,
        alert_sinks=[LoggingAlertSink()],
        audit_logger=AuditLogger(settings.audit_log_file, migration_id=plan.migration_id),
    )


def _open_run(ctx: click.Context) -> Tuple[MigrationPlan, ProgressTracker]:
    """Load the persisted run, or start one from the plan if none exists yet."""
    plan = _load_plan(ctx)
    settings = _build_settings(ctx, plan)
    tracker = _build_tracker(ctx, plan, settings)
    if not tracker.load_migration(plan.migration_id):
        tracker.initialize_migration(plan.migration_id, plan.to_phases())
    return plan, tracker


def _plan_table(plan: MigrationPlan, plans: Dict[str, PlanSummary]) -> Table:
    table = Table(title=f"Migration plan: {escape(plan.migration_id)}", box=box.ROUNDED, header_style="bold magenta")
    table.add_column("Phase", style="cyan", no_wrap=True)
    table.add_column("Depends on")
    table.add_column("Worker")
    table.add_column("Units", justify="right")
    table.add_column("Size", justify="right")
    table.add_column("Categories")
    table.add_column("Skipped", style="yellow")

    for definition in plan.phases:
        summary = plans.get(definition.id)
        worker_type = definition.worker.type if definition.worker else "manual"
        if summary is None:
            table.add_row(definition.id, ", ".join(definition.dependencies) or "-", worker_type, "-", "-", "-", "-")
            continue
        size = (
            f"{summary.total_size} rows" if worker_type == "relational"
            else format_bytes(summary.total_size)
        )
        categories = ", ".join(f"{name}={count}" for name, count in sorted(summary.categories.items()))
        table.add_row(
            definition.id,
            ", ".join(definition.dependencies) or "-",
            worker_type,
            str(summary.total_units),
            size,
            escape(categories) or "-",
            escape(", ".join(summary.skipped)) or "-",
        )
    return table


def _print_summary(summary: RunSummary):
    if summary.succeeded:
        console.print(Panel.fit(
            "[bold green]Migration completed successfully[/bold green]",
            title="Migration Result",
            border_style="green"
        ))
        return

    lines = [f"Status: [bold]{summary.status.value}[/bold]"]
    if summary.failed_units:
        lines.append(f"Failed units: [red]{summary.failed_units}[/red]")
    failed = [pid for pid, outcome in summary.outcomes.items() if outcome.status == PhaseStatus.FAILED]
    if failed:
        lines.append(f"Failed phases: [red]{', '.join(failed)}[/red]")
    awaiting = [pid for pid, outcome in summary.outcomes.items() if outcome.awaiting_acknowledgement]
    if awaiting:
        lines.append(f"Verification failed (ack or retry): [yellow]{', '.join(awaiting)}[/yellow]")
    if summary.blocked_phases:
        lines.append(f"Blocked by failure: {', '.join(summary.blocked_phases)}")
    if summary.manual_phases:
        lines.append(f"Manual phases pending: {', '.join(summary.manual_phases)}")
    if summary.halted:
        lines.append("[yellow]Run halted; no new phases were started[/yellow]")
    console.print(Panel.fit("\n".join(lines), title="Migration Result", border_style="yellow"))


@click.group()
@click.version_option(__version__, prog_name="migrate")
@click.option("--plan-file", "-f", default="migration-plan.yaml", envvar="MIGRATION_PLAN_FILE",
              show_default=True, help="Migration plan (YAML or JSON)")
@click.option("--state-dir", envvar="MIGRATION_STATE_DIR", help="Directory holding run state")
@click.option("--log-level", type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
              help="Logging level")
@click.option("--redis-url", envvar="MIGRATION_REDIS_URL", help="Keep run state in Redis instead of files")
@click.pass_context
def main(ctx: click.Context, plan_file: str, state_dir: Optional[str], log_level: Optional[str],
         redis_url: Optional[str]):
    """
    Migration Engine

    Runs a dependency-ordered migration plan: object storage, cache and
    relational data phases, with progress tracking and verification.
    """
    ctx.ensure_object(dict)
    ctx.obj["plan_file"] = plan_file
    ctx.obj["state_dir"] = state_dir
    ctx.obj["log_level"] = log_level
    ctx.obj["redis_url"] = redis_url
    setup_logging(level=log_level or "WARNING")


@main.command()
@click.pass_context
@handle_errors
def plan(ctx: click.Context):
    """Show what each phase would migrate, without changing anything."""
    migration_plan = _load_plan(ctx)
    settings = _build_settings(ctx, migration_plan)
    tracker = _build_tracker(ctx, migration_plan, settings, persist=False)
    tracker.initialize_migration(migration_plan.migration_id, migration_plan.to_phases())

    orchestrator = MigrationOrchestrator.from_plan(migration_plan, tracker, settings, monitor_resources=False)
    plans = asyncio.run(orchestrator.plan())
    console.print(_plan_table(migration_plan, plans))


@main.command()
@click.option("--dry-run", is_flag=True, help="Plan every phase without moving data")
@click.option("--batch-size", type=click.IntRange(min=1), help="Override the batch size of every worker")
@click.option("--concurrency", type=click.IntRange(min=1), help="Override unit concurrency")
@click.option("--skip-verification", is_flag=True, help="Complete phases without verifying them")
@click.option("--full-verification", is_flag=True, help="Verify every unit instead of a sample")
@click.option("--halt-on-failure", is_flag=True, help="Start no new phase after a phase fails")
@click.option("--retry-failed", is_flag=True, help="Reset failed phases before running")
@click.pass_context
@handle_errors
def run(ctx: click.Context, dry_run: bool, batch_size: Optional[int], concurrency: Optional[int],
        skip_verification: bool, full_verification: bool, halt_on_failure: bool, retry_failed: bool):
    """Run every ready phase of the migration."""
    migration_plan = _load_plan(ctx)
    settings = _build_settings(ctx, migration_plan, concurrency=concurrency)
    tracker = _build_tracker(ctx, migration_plan, settings, persist=not dry_run)

    orchestrator = MigrationOrchestrator.from_plan(
        migration_plan, tracker, settings, console=console, full_verification=full_verification
    )
    overrides = {}
    if batch_size:
        overrides["batch_size"] = batch_size
    if concurrency:
        overrides["concurrency"] = concurrency
    if overrides:
        for bound in orchestrator.workers.values():
            bound.config = bound.config.model_copy(update=overrides)

    if dry_run:
        tracker.initialize_migration(migration_plan.migration_id, migration_plan.to_phases())
    elif orchestrator.prepare(migration_plan.migration_id, migration_plan.to_phases()):
        console.print(f"[dim]Resuming migration {escape(migration_plan.migration_id)}[/dim]")

    summary = asyncio.run(orchestrator.run(
        dry_run=dry_run,
        skip_verification=skip_verification,
        halt_on_failure=halt_on_failure,
        retry_failed=retry_failed,
    ))

    if dry_run:
        console.print(_plan_table(migration_plan, summary.plans))
        console.print("[yellow]Dry run: no data was moved[/yellow]")
    else:
        DashboardRenderer(console).render(tracker.get_dashboard())
        _print_summary(summary)
    sys.exit(summary.exit_code)


@main.command()
@click.option("--json", "as_json", is_flag=True, help="Print the dashboard as JSON")
@click.option("--alerts", type=click.IntRange(min=1), help="Number of recent alerts to show")
@click.pass_context
@handle_errors
def status(ctx: click.Context, as_json: bool, alerts: Optional[int]):
    """Show the dashboard of the current run."""
    migration_plan = _load_plan(ctx)
    settings = _build_settings(ctx, migration_plan)
    tracker = _build_tracker(ctx, migration_plan, settings)
    if not tracker.load_migration(migration_plan.migration_id):
        raise ConfigurationError(f"No run found for migration {migration_plan.migration_id}")

    dashboard = tracker.get_dashboard(recent_alerts=alerts)
    if as_json:
        click.echo(dashboard.model_dump_json(indent=2))
    else:
        DashboardRenderer(console).render(dashboard)


@main.command()
@click.argument("phase_id")
@click.option("--reason", help="Why the phase is skipped")
@click.pass_context
@handle_errors
def skip(ctx: click.Context, phase_id: str, reason: Optional[str]):
    """Skip a pending phase; its dependents may start."""
    _, tracker = _open_run(ctx)
    tracker.skip_phase(phase_id, reason=reason)
    ready = tracker.next_ready_phases()
    console.print(f"[green]Skipped {escape(phase_id)}[/green]")
    if ready:
        console.print(f"Ready to start: {', '.join(ready)}")


@main.command()
@click.argument("phase_id")
@click.pass_context
@handle_errors
def retry(ctx: click.Context, phase_id: str):
    """Reset a failed phase, or one that failed verification, to pending."""
    _, tracker = _open_run(ctx)
    phase = tracker.get_phase(phase_id)
    if phase.status == PhaseStatus.IN_PROGRESS and phase.verification_failed:
        tracker.fail_phase(phase_id, "Reset for retry after failed verification")
    tracker.retry_phase(phase_id)
    console.print(
        f"[green]Phase {escape(phase_id)} reset for attempt {tracker.get_phase(phase_id).attempt_number}[/green]"
    )


@main.command()
@click.argument("phase_id")
@click.option("--note", help="Why the verification failure is accepted")
@click.pass_context
@handle_errors
def ack(ctx: click.Context, phase_id: str, note: Optional[str]):
    """Accept a failed verification and complete the phase."""
    _, tracker = _open_run(ctx)
    tracker.acknowledge_verification(phase_id, note=note)
    if tracker.get_phase(phase_id).status == PhaseStatus.IN_PROGRESS:
        ready = tracker.complete_phase(phase_id)
        console.print(f"[green]Phase {escape(phase_id)} completed[/green]")
        if ready:
            console.print(f"Ready to start: {', '.join(ready)}")
    else:
        console.print(f"[green]Verification failure acknowledged for {escape(phase_id)}[/green]")


if __name__ == "__main__":
    main()
