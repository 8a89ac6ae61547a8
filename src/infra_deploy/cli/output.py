"""Rich rendering of run reports, history and change sets."""

import threading
from typing import List, Optional

from rich.console import Console
from rich.panel import Panel
from rich.progress import BarColumn, Progress, SpinnerColumn, TaskProgressColumn, TextColumn
from rich.table import Table

from infra_deploy.history.models import DeploymentRecord, DeploymentStatus
from infra_deploy.orchestrator.change_detector import ChangeSet
from infra_deploy.orchestrator.executor import DeploymentReport, ModuleStatus
from infra_deploy.orchestrator.orchestrator import OrchestrationResult
from infra_deploy.orchestrator.rollback import RollbackPlan, RollbackResult
from infra_deploy.state.models import ModuleId

console = Console()

STATUS_STYLES = {
    ModuleStatus.SUCCEEDED: "[green]✓ succeeded[/green]",
    ModuleStatus.FAILED: "[red]✗ failed[/red]",
    ModuleStatus.SKIPPED: "[yellow]- skipped[/yellow]",
}

RECORD_STYLES = {
    DeploymentStatus.SUCCESS: "green",
    DeploymentStatus.FAILED: "red",
    DeploymentStatus.CANCELLED: "yellow",
}


class RichProgressCallback:
    """Progress callback that displays module status changes using Rich."""

    def __init__(self, progress: Progress, task_id, total: Optional[int] = None):
        self.progress = progress
        self.task_id = task_id
        self.completed = 0
        self._lock = threading.Lock()
        if total is not None:
            self.progress.update(self.task_id, total=total)

    def __call__(self, module_id: ModuleId, status: ModuleStatus, message: Optional[str]) -> None:
        with self._lock:
            if status.is_terminal:
                self.completed += 1
            completed = self.completed
        self.progress.update(
            self.task_id,
            completed=completed,
            description=f"[cyan]{status.value}:[/cyan] {module_id}"
        )


def create_progress() -> Progress:
    return Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        TaskProgressColumn(),
        console=console,
        transient=True
    )


def print_report(report: DeploymentReport) -> None:
    """Print one environment's per-module results."""
    title = f"{report.operation.value} - {report.environment}"
    if report.dry_run:
        title += " (dry run)"

    table = Table(show_header=True, header_style="bold cyan", title=title)
    table.add_column("Module", style="cyan")
    table.add_column("Status")
    table.add_column("Mocked inputs", style="magenta")
    table.add_column("Duration", justify="right")
    table.add_column("Details", style="dim")

    for path, outcome in report.outcomes.items():
        table.add_row(
            path,
            STATUS_STYLES.get(outcome.status, outcome.status.value),
            ", ".join(outcome.mocked_inputs),
            f"{outcome.duration:.1f}s",
            outcome.message() or ""
        )

    console.print(table)
    if report.record is not None:
        console.print(f"[dim]Recorded as {report.record.record_id}[/dim]")
    if report.cancelled:
        console.print("[yellow]Run was cancelled[/yellow]")


def print_result(result: OrchestrationResult) -> None:
    """Print every environment's report and a summary panel."""
    for report in result.reports.values():
        print_report(report)
        console.print()

    for environment, error in result.errors.items():
        console.print(f"[red]✗ {environment}:[/red] {error.to_user_message()}")

    succeeded = sum(len(r.succeeded) for r in result.reports.values())
    failed = sum(len(r.failed) for r in result.reports.values())
    skipped = sum(len(r.skipped) for r in result.reports.values())

    if result.is_success():
        console.print(Panel.fit(
            f"[green]✓ {result.operation.value} successful[/green]\n\n"
            f"Environments: {', '.join(result.environments) or 'none'}\n"
            f"Succeeded: {succeeded}",
            title="Complete",
            border_style="green"
        ))
    else:
        console.print(Panel.fit(
            f"[red]✗ {result.operation.value} failed[/red]\n\n"
            f"Environments: {', '.join(result.environments) or 'none'}\n"
            f"Succeeded: {succeeded}\n"
            f"Failed: {failed}\n"
            f"Skipped: {skipped}",
            title="Failed",
            border_style="red"
        ))


def print_change_set(change_set: ChangeSet) -> None:
    if change_set.is_empty:
        console.print("[yellow]No modules affected[/yellow]")
    for environment, paths in change_set.by_environment().items():
        console.print(f"[bold]{environment}[/bold]")
        for path in paths:
            console.print(f"  [cyan]{path}[/cyan]")
    if change_set.unmatched:
        console.print(f"\n[dim]{len(change_set.unmatched)} changed path(s) outside any module[/dim]")


def print_records(environment: str, records: List[DeploymentRecord]) -> None:
    if not records:
        console.print(f"[yellow]No deployment history found for {environment}[/yellow]")
        return

    table = Table(show_header=True, header_style="bold cyan", title=f"Deployments - {environment}")
    table.add_column("Record", style="cyan")
    table.add_column("Operation")
    table.add_column("Status")
    table.add_column("Version", style="magenta")
    table.add_column("Modules", justify="right")
    table.add_column("Timestamp", style="dim")
    table.add_column("By", style="dim")

    for record in records:
        style = RECORD_STYLES.get(record.status, "white")
        operation = record.operation.value
        if record.rollback_of:
            operation += f" -> {record.rollback_of}"
        table.add_row(
            record.record_id,
            operation,
            f"[{style}]{record.status.value}[/{style}]",
            record.version or "",
            str(len(record.modules)),
            record.timestamp.isoformat(),
            record.deployed_by or ""
        )

    console.print(table)


def print_record(record: DeploymentRecord) -> None:
    """Print one record with its module results."""
    style = RECORD_STYLES.get(record.status, "white")
    console.print(Panel.fit(
        f"Record: {record.record_id}\n"
        f"Operation: {record.operation.value}\n"
        f"Status: [{style}]{record.status.value}[/{style}]\n"
        f"Version: {record.version or 'n/a'}\n"
        f"Timestamp: {record.timestamp.isoformat()}\n"
        f"Duration: {record.duration:.2f}s",
        title=record.environment,
        border_style=style
    ))

    table = Table(show_header=True, header_style="bold cyan")
    table.add_column("Module", style="cyan")
    table.add_column("Status")
    table.add_column("Error", style="dim")
    for module in record.modules:
        table.add_row(module.path, module.status, module.error or "")
    console.print(table)


def print_rollback_plan(plan: RollbackPlan) -> None:
    console.print(Panel.fit(
        f"[bold yellow]⚠ Rollback of {plan.environment}[/bold yellow]\n\n"
        f"Target: {plan.target.record_id} (version {plan.target.version or 'n/a'})\n"
        f"Modules to restore: {plan.get_total_operations()}\n"
        f"Orphaned modules: {', '.join(plan.orphaned) or 'none'}",
        title="Rollback Plan",
        border_style="yellow"
    ))


def print_rollback_result(result: RollbackResult) -> None:
    print_report(result.report)
    if result.orphaned:
        console.print(
            f"[yellow]Left untouched (not in {result.plan.target.record_id}):[/yellow] "
            f"{', '.join(result.orphaned)}"
        )
