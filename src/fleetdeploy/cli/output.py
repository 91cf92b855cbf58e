"""Rich rendering of results and pipeline output files."""

import json
import os
from typing import Dict, List, Optional

import click
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from ..orchestrator.models import (
    DeploymentReport,
    DeploymentStatus,
    DetectionResult,
    ExecutionReport,
    FleetSummary,
    HealthClassification,
)
from ..utils.logging import get_logger

logger = get_logger(__name__)
console = Console()

STATUS_STYLES = {
    DeploymentStatus.SUCCESS: "green",
    DeploymentStatus.ROLLED_BACK: "yellow",
    DeploymentStatus.FAILED_VALIDATION: "red",
    DeploymentStatus.FAILED: "red",
    DeploymentStatus.CRITICAL_FAILURE: "magenta",
}

HEALTH_STYLES = {
    HealthClassification.HEALTHY: "[green]healthy[/green]",
    HealthClassification.DEGRADED: "[yellow]degraded[/yellow]",
    HealthClassification.FAILED: "[red]failed[/red]",
}


def parse_stack_list(value: Optional[str]) -> List[str]:
    """Parse a stack list given as a JSON array or comma/space separated names.

    Repeated names are kept once, in first-seen order.
    """
    if not value or not value.strip():
        return []
    value = value.strip()
    if value.startswith("["):
        try:
            parsed = json.loads(value)
        except json.JSONDecodeError as e:
            raise click.BadParameter(f"not a valid JSON array: {e}")
        names = [str(item).strip() for item in parsed if str(item).strip()]
    else:
        names = [item.strip() for item in value.replace(",", " ").split() if item.strip()]
    return list(dict.fromkeys(names))


def write_outputs(outputs: Dict[str, str], path: Optional[str] = None) -> Optional[str]:
    """Append key=value lines to the pipeline output file.

    Args:
        outputs: Output names and values
        path: Output file; defaults to $GITHUB_OUTPUT

    Returns:
        Path written, or None when no output file is configured
    """
    path = path or os.environ.get("GITHUB_OUTPUT")
    if not path:
        return None
    with open(path, "a") as f:
        for key, value in outputs.items():
            f.write(f"{key}={value}\n")
    logger.debug(f"Wrote {len(outputs)} outputs to {path}")
    return path


def show_detection(result: DetectionResult) -> None:
    table = Table(title="Stack Changes")
    table.add_column("Category", style="cyan")
    table.add_column("Stacks")
    table.add_row("Removed", ", ".join(result.removed) or "[dim]none[/dim]")
    table.add_row("New", ", ".join(result.new) or "[dim]none[/dim]")
    table.add_row("Existing", ", ".join(result.existing) or "[dim]none[/dim]")
    console.print(table)
    if result.first_deployment:
        console.print("[dim]First deployment: removal detection skipped[/dim]")


def show_execution(report: ExecutionReport, show_logs: bool = True) -> None:
    operation = report.operation.value
    if report.validation_failures:
        table = Table(title=f"Pre-{operation} Validation Failures")
        table.add_column("Stack", style="cyan")
        table.add_column("Reason", style="red")
        for failure in report.validation_failures:
            table.add_row(failure.stack_name, escape(failure.reason))
        console.print(table)
        return

    table = Table(title=f"{operation.capitalize()} Results")
    table.add_column("Stack", style="cyan")
    table.add_column("Result")
    table.add_column("Exit Code", justify="right")
    table.add_column("Note", style="dim")
    for name, outcome in report.outcomes.items():
        status = "[green]✓ success[/green]" if outcome.succeeded else "[red]✗ failed[/red]"
        table.add_row(name, status, str(outcome.exit_code), escape(outcome.diagnostic or ""))
    console.print(table)

    if show_logs:
        for name in report.failed:
            outcome = report.outcomes[name]
            console.print(Panel(
                Text("\n".join(outcome.log_lines) or "no output"),
                title=f"{operation} log: {name}",
                border_style="red",
            ))


def show_health(summary: FleetSummary) -> None:
    table = Table(title="Stack Health")
    table.add_column("Stack", style="cyan")
    table.add_column("Health")
    table.add_column("Services", justify="right")
    table.add_column("Healthy", justify="right")
    table.add_column("Starting", justify="right")
    table.add_column("Unhealthy", justify="right")
    table.add_column("Exited", justify="right")
    table.add_column("Reason", style="dim")
    for name, verdict in summary.verdicts.items():
        table.add_row(
            name,
            HEALTH_STYLES[verdict.classification],
            str(verdict.total_containers),
            str(verdict.running_healthy + verdict.running_no_health_check),
            str(verdict.running_starting),
            str(verdict.running_unhealthy),
            str(verdict.exited),
            escape(verdict.reason),
        )
    for name in summary.skipped_stacks:
        table.add_row(name, "[dim]skipped[/dim]", "", "", "", "", "", "critical failure earlier")
    console.print(table)
    console.print(
        f"Containers running: {summary.running_containers}/{summary.total_containers} "
        f"({summary.success_rate}%)"
    )
    if summary.flagged_critical_stacks:
        console.print(
            f"[magenta]Critical stacks flagged:[/magenta] {', '.join(summary.flagged_critical_stacks)}"
        )


def show_report(report: DeploymentReport) -> None:
    """Render a full controller report."""
    if report.detection is not None:
        show_detection(report.detection)
    if report.deploy is not None:
        show_execution(report.deploy)
    if report.health is not None:
        show_health(report.health)
    if report.rollback is not None:
        console.print(
            f"\n[bold]Rollback stacks:[/bold] {', '.join(report.discovered_rollback_stacks)}"
        )
        show_execution(report.rollback)
    if report.rollback_health is not None:
        show_health(report.rollback_health)

    style = STATUS_STYLES[report.status]
    lines = [f"[{style}]{report.status.value}[/{style}]"]
    lines.append("States: " + " → ".join(state.value for state in report.state_history))
    if report.unsafe_state:
        lines.append("[magenta]Unsafe state: manual intervention required[/magenta]")
    if report.error is not None:
        lines.append(f"Error: {escape(report.error.message)}")
    console.print(Panel.fit("\n".join(lines), title="Deployment Status", border_style=style))
