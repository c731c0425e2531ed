"""
Command Line Interface for the reconciliation engine.

Provides commands for applying and validating policy documents and for
inspecting and rendering the run history.
"""

import logging
import signal
import sys
import threading
from contextlib import contextmanager
from typing import List, Optional, Tuple

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from . import __version__
from .core.config import ToolConfig, load_config
from .core.coordinator import RunCoordinator
from .core.errors import SchemaError
from .core.models import PolicyDocument, ResultStatus, RunReport
from .database.manager import HistoryStore
from .hosts.factory import HostFactory
from .policy.loader import PolicyLoader
from .reporting.generator import ReportGenerator, write_jsonl

console = Console()
err_console = Console(stderr=True)
logger = logging.getLogger(__name__)

STATUS_COLORS = {
    "unchanged": "green",
    "changed": "yellow",
    "failed": "red",
    "skipped": "dim",
}

EXIT_SCHEMA_ERROR = 2


def setup_logging(level: str) -> None:
    """Route log records to stderr through rich."""
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )


@contextmanager
def cancel_on_signal(cancel: threading.Event):
    """Turn SIGINT/SIGTERM into a cancellation request checked between resources."""
    def _handler(signum, frame):
        err_console.print("[yellow]Cancellation requested; finishing current resource...[/yellow]")
        cancel.set()

    if threading.current_thread() is not threading.main_thread():
        yield cancel
        return

    previous = {sig: signal.signal(sig, _handler) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        yield cancel
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)


def load_policy(policy_file: str) -> PolicyDocument:
    """Load a policy, exiting with the schema error code on failure."""
    try:
        return PolicyLoader().load(policy_file)
    except SchemaError as e:
        err_console.print(f"[red]{escape(str(e))}[/red]")
        sys.exit(EXIT_SCHEMA_ERROR)


@click.group()
@click.version_option(version=__version__)
@click.option('--config', '-c', help="Path to configuration file")
@click.option('--verbose', '-v', is_flag=True, help="Enable verbose output")
@click.pass_context
def cli(ctx, config: Optional[str], verbose: bool):
    """
    Idempotent host-state reconciliation engine.

    Applies declarative policy documents (packages, services, file
    attributes, config lines, mounts, sysctls, assertions) to hosts.
    """
    ctx.ensure_object(dict)
    try:
        tool_config = load_config(config)
    except SchemaError as e:
        err_console.print(f"[red]{escape(str(e))}[/red]")
        sys.exit(EXIT_SCHEMA_ERROR)

    setup_logging("DEBUG" if verbose else tool_config.log_level)
    ctx.obj['config'] = tool_config


@cli.command()
@click.argument('policy_file', type=click.Path(dir_okay=False))
@click.option('--host', '-H', 'hosts', multiple=True, required=True,
              help="Target host (repeatable)")
@click.option('--dry-run', '-n', is_flag=True, help="Show what would change without applying")
@click.option('--timeout', type=float, help="Per-operation timeout in seconds")
@click.option('--continue-on-error', is_flag=True,
              help="Do not halt when a fatal resource fails")
@click.option('--output', '-o', type=click.Path(dir_okay=False),
              help="Write JSON Lines records here instead of stdout")
@click.option('--max-workers', type=int, help="Hosts reconciled in parallel")
@click.pass_context
def apply(ctx, policy_file: str, hosts: Tuple[str, ...], dry_run: bool,
          timeout: Optional[float], continue_on_error: bool, output: Optional[str],
          max_workers: Optional[int]):
    """
    Apply a policy document to one or more hosts.

    Exit code is 0 when every resource converged, 1 when non-fatal
    failures were recorded and 2 when a run was halted or cancelled.
    """
    config: ToolConfig = ctx.obj['config']
    document = load_policy(policy_file)

    # Reports are keyed by host name, so a repeated target runs once
    targets = {}
    try:
        for target in hosts:
            host = HostFactory.get_host(target)
            targets.setdefault(host.name, host)
    except ValueError as e:
        err_console.print(f"[red]{escape(str(e))}[/red]")
        sys.exit(EXIT_SCHEMA_ERROR)
    if len(targets) < len(hosts):
        err_console.print("[yellow]Ignoring repeated --host targets[/yellow]")

    store = _open_history(config)
    coordinator = RunCoordinator(
        document,
        timeout=timeout if timeout is not None else config.timeout,
        dry_run=dry_run,
        continue_on_error=continue_on_error or config.continue_on_error,
        on_report=store.save_report if store else None,
    )

    err_console.print(Panel(
        f"[bold]Policy:[/bold] {escape(document.name or '')}\n"
        f"Resources: {len(document.resources)}  Handlers: {len(document.handlers)}\n"
        f"Hosts: {', '.join(targets)}\n"
        f"Mode: {'Dry Run' if dry_run else 'Live Application'}",
        title="Reconcile",
    ))

    with cancel_on_signal(threading.Event()) as cancel:
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            console=err_console,
            transient=True,
        ) as progress:
            progress.add_task("Reconciling hosts...", total=None)
            reports = coordinator.run_many(
                list(targets.values()),
                max_workers=max_workers or config.max_workers,
                cancel=cancel,
            )

    # Records own stdout unless --output is given
    if output:
        with open(output, 'w') as f:
            write_jsonl(reports.values(), f)
        summary_console = console
    else:
        write_jsonl(reports.values(), sys.stdout)
        summary_console = err_console

    for report in reports.values():
        _display_summary(report, summary_console)

    sys.exit(max((report.exit_code for report in reports.values()), default=0))


@cli.command()
@click.argument('policy_file', type=click.Path(dir_okay=False))
def validate(policy_file: str):
    """Load, expand and validate a policy document without contacting hosts."""
    document = load_policy(policy_file)
    _display_resources(document)
    console.print(f"[green]Policy {escape(document.name or '')} is valid: "
                  f"{len(document.resources)} resources, {len(document.handlers)} handlers[/green]")


@cli.command()
@click.option('--limit', default=20, show_default=True, help="Number of runs to show")
@click.pass_context
def history(ctx, limit: int):
    """List previous runs."""
    store = _require_history(ctx.obj['config'])
    runs = store.list_runs(limit=limit)

    if not runs:
        console.print("[yellow]No runs recorded[/yellow]")
        return

    table = Table(title="Run History")
    table.add_column("Run ID", style="dim")
    table.add_column("Started")
    table.add_column("Host")
    table.add_column("Policy")
    table.add_column("Unchanged", justify="right")
    table.add_column("Changed", justify="right")
    table.add_column("Failed", justify="right")
    table.add_column("Exit", justify="right")

    for run in runs:
        table.add_row(
            run['run_id'],
            run['started_at'].strftime("%Y-%m-%d %H:%M:%S"),
            run['host'],
            (run['policy_name'] or "-") + (" (dry run)" if run['dry_run'] else ""),
            str(run['unchanged']),
            str(run['changed']),
            f"[red]{run['failed']}[/red]" if run['failed'] else "0",
            str(run['exit_code']),
        )

    console.print(table)


@cli.command()
@click.option('--run-id', help="Run to report on (latest if omitted)")
@click.option('--format', 'report_format', type=click.Choice(list(ReportGenerator.FORMATS)),
              default='json', help="Report format")
@click.option('--output', '-o', required=True, help="Output file path")
@click.pass_context
def report(ctx, run_id: Optional[str], report_format: str, output: str):
    """Render a stored run as JSON, JSON Lines or HTML."""
    store = _require_history(ctx.obj['config'])
    run_report = store.get_report(run_id) if run_id else store.get_latest_report()

    if run_report is None:
        err_console.print(f"[red]No run found{f' with id {run_id}' if run_id else ''}[/red]")
        sys.exit(1)

    path = ReportGenerator().generate_report(run_report, format=report_format, output_path=output)
    console.print(f"[green]Report generated: {path}[/green]")


def _open_history(config: ToolConfig) -> Optional[HistoryStore]:
    """Open the history store; history is best effort during apply."""
    if not config.record_history:
        return None
    try:
        store = HistoryStore(config.history_db)
        store.initialize()
        return store
    except Exception as e:
        logger.warning("Run history disabled: %s", e)
        return None


def _require_history(config: ToolConfig) -> HistoryStore:
    store = HistoryStore(config.history_db)
    store.initialize()
    return store


def _display_summary(report: RunReport, out: Console = console):
    """Display counts and failures for one host run."""
    summary = report.summary()

    table = Table(title=f"Summary - {report.host}" + (" (dry run)" if report.dry_run else ""))
    table.add_column("Metric", style="bold")
    table.add_column("Value", justify="right")

    for status in ResultStatus:
        count = summary[status.value]
        color = STATUS_COLORS[status.value]
        table.add_row(status.value.title(), f"[{color}]{count}[/{color}]" if count else "0")
    table.add_row("Handlers fired", str(summary["handlers_fired"]))
    if summary["handlers_failed"]:
        table.add_row("Handlers failed", f"[red]{summary['handlers_failed']}[/red]")

    out.print(table)

    failures: List[str] = [
        f"{r.resource_id} [{r.kind}] {r.error.type}: {r.error.message}"
        for r in report.failed_results if r.error
    ]
    failures += [
        f"handler {h.name}: {h.error.message}" for h in report.failed_handlers if h.error
    ]
    if failures:
        out.print("[red bold]Failures:[/red bold]")
        for failure in failures:
            out.print(f"  • {failure}", markup=False)

    if report.halted_by:
        out.print(f"[red]Run halted by fatal resource {report.halted_by}[/red]")
    if report.cancelled:
        out.print("[yellow]Run cancelled[/yellow]")


def _display_resources(document: PolicyDocument):
    """Display the expanded resources of a policy."""
    table = Table(title=f"Policy {document.name}")
    table.add_column("#", justify="right", style="dim")
    table.add_column("ID")
    table.add_column("Kind")
    table.add_column("Target")
    table.add_column("Notify")
    table.add_column("Fatal")

    for index, resource in enumerate(document.resources, 1):
        table.add_row(
            str(index),
            resource.id,
            resource.kind,
            _describe_target(resource),
            ", ".join(resource.notify),
            "[red]yes[/red]" if resource.fatal else "",
        )

    console.print(table)


def _describe_target(resource) -> str:
    params = resource.params
    for field in ("path", "name", "mount_point", "key"):
        value = getattr(params, field, None)
        if value:
            return value
    return " ".join(getattr(params, "command", []))


def main():
    """Main CLI entry point."""
    cli()


if __name__ == "__main__":
    main()
