"""Main CLI entry point."""

import signal
import sys
from contextlib import contextmanager
from pathlib import Path
from typing import List, Optional, Tuple

import boto3
import click

from infra_deploy.cli.graph import generate_dot, render_tree, render_waves
from infra_deploy.cli.output import (
    RichProgressCallback,
    console,
    create_progress,
    print_change_set,
    print_record,
    print_records,
    print_result,
    print_rollback_plan,
    print_rollback_result,
)
from infra_deploy.config.parser import DEFAULT_CONFIG_FILE, Config
from infra_deploy.engine.terraform import TerraformEngine
from infra_deploy.history.retention import RetentionPolicy
from infra_deploy.orchestrator.change_detector import changed_paths_from_git
from infra_deploy.orchestrator.executor import ExecutionOptions
from infra_deploy.orchestrator.orchestrator import DeploymentOrchestrator
from infra_deploy.state.models import Operation
from infra_deploy.state.store import DynamoDBStateStore, InMemoryStateStore, LocalStateStore, StateStore
from infra_deploy.utils.errors import ConfigValidationError, DeploymentError
from infra_deploy.utils.logging import LogContext, get_logger, setup_logging

logger = get_logger(__name__)


@click.group()
@click.option('--profile', help='AWS profile for the dynamodb backend')
@click.option('--region', help='AWS region for the dynamodb backend')
@click.option('--log-level', default='info', type=click.Choice(['debug', 'info', 'warning', 'error']))
@click.option('--log-dir', default='.infra-deploy/logs', help='Directory for JSON log files')
@click.pass_context
def cli(ctx, profile, region, log_level, log_dir):
    """Multi-environment infrastructure deployment orchestrator."""
    ctx.ensure_object(dict)
    ctx.obj['profile'] = profile
    ctx.obj['region'] = region
    ctx.obj['log_level'] = log_level

    # Setup logging
    setup_logging(log_level, log_dir)


def load_config(config_path: str = DEFAULT_CONFIG_FILE) -> Config:
    """Load and validate configuration file."""
    try:
        config = Config(config_path)
        config.load()
        return config
    except FileNotFoundError:
        console.print(f"[red]Error:[/red] Configuration file not found: {config_path}")
        sys.exit(1)
    except ConfigValidationError as e:
        console.print("[red]Configuration validation failed:[/red]\n")
        console.print(str(e))
        sys.exit(1)


def create_store(config: Config, profile: Optional[str] = None, region: Optional[str] = None) -> StateStore:
    """Create the state store named by the backend configuration."""
    backend = config.backend
    if backend.type == "memory":
        return InMemoryStateStore()
    if backend.type == "dynamodb":
        session = boto3.Session(
            profile_name=profile or backend.profile,
            region_name=region or backend.region
        )
        return DynamoDBStateStore(backend.table, session=session)
    return LocalStateStore(str(config.repo_root / backend.path))


def create_orchestrator(
    config: Config,
    profile: Optional[str] = None,
    region: Optional[str] = None
) -> DeploymentOrchestrator:
    """Create deployment orchestrator with all dependencies."""
    execution = config.execution
    engine = TerraformEngine(
        repo_root=str(config.repo_root),
        live_root=config.project.live_root,
        binary=execution.engine_binary or execution.engine,
        timeout=execution.engine_timeout
    )
    return DeploymentOrchestrator(
        config=config,
        store=create_store(config, profile, region),
        engine=engine
    )


@contextmanager
def cancel_on_interrupt(orchestrator: DeploymentOrchestrator):
    """Turn Ctrl-C into a cooperative cancellation of in-flight runs."""
    def handler(signum, frame):
        console.print("\n[yellow]Cancelling: running modules will finish, pending modules are skipped[/yellow]")
        orchestrator.cancel()

    previous = signal.signal(signal.SIGINT, handler)
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, previous)


def _count_modules(orchestrator: DeploymentOrchestrator, environment: str, modules: Tuple[str, ...]) -> int:
    environments = orchestrator.select_environments(environment)
    if modules:
        return len(modules) * len(environments)
    return sum(len(orchestrator.graph(env)) for env in environments)


def config_option(func):
    return click.option('--config', 'config_path', default=DEFAULT_CONFIG_FILE, help='Path to configuration file')(func)


def operation_options(func):
    """Options shared by plan, apply, destroy and validate."""
    decorators = [
        click.option('--env', 'environment', required=True, help="Environment name or 'all'"),
        click.option('--module', 'modules', multiple=True, help='Limit the run to these module paths'),
        click.option('--dry-run', is_flag=True, help='Resolve and schedule without calling the engine'),
        click.option('--force', is_flag=True, help='Take over locks held by others'),
        click.option('--concurrency', type=click.IntRange(min=1), help='Parallel modules per environment'),
        click.option('--version', 'version', help='Configuration version recorded in history'),
        config_option,
    ]
    for decorator in reversed(decorators):
        func = decorator(func)
    return func


def _run_operation(
    ctx,
    operation: Operation,
    environment: str,
    modules: Tuple[str, ...],
    dry_run: bool,
    force: bool,
    concurrency: Optional[int],
    version: Optional[str],
    config_path: str
) -> None:
    try:
        cfg = load_config(config_path)
        orchestrator = create_orchestrator(cfg, ctx.obj.get('profile'), ctx.obj.get('region'))
        options = ExecutionOptions(
            dry_run=dry_run,
            force=force,
            concurrency=concurrency,
            targets=list(modules) or None,
            version=version
        )

        with LogContext(logger, holder=orchestrator.executor.holder), \
                cancel_on_interrupt(orchestrator), create_progress() as progress:
            task_id = progress.add_task(f"[cyan]Starting {operation.value}...", total=None)
            callback = RichProgressCallback(progress, task_id, _count_modules(orchestrator, environment, modules))
            result = orchestrator.deploy(environment, operation, options, callback)

        console.print()
        print_result(result)
        if not result.is_success():
            sys.exit(1)

    except DeploymentError as e:
        console.print(f"[red]{operation.value.capitalize()} error:[/red] {e.to_user_message()}")
        sys.exit(1)


@cli.command()
@operation_options
@click.pass_context
def plan(ctx, environment, modules, dry_run, force, concurrency, version, config_path):
    """Plan modules, using mocked outputs where producers are not applied."""
    _run_operation(ctx, Operation.PLAN, environment, modules, dry_run, force, concurrency, version, config_path)


@cli.command()
@operation_options
@click.pass_context
def validate(ctx, environment, modules, dry_run, force, concurrency, version, config_path):
    """Validate module configuration with the provisioning engine."""
    _run_operation(ctx, Operation.VALIDATE, environment, modules, dry_run, force, concurrency, version, config_path)


@cli.command()
@operation_options
@click.pass_context
def apply(ctx, environment, modules, dry_run, force, concurrency, version, config_path):
    """Apply modules in dependency order."""
    _run_operation(ctx, Operation.APPLY, environment, modules, dry_run, force, concurrency, version, config_path)


@cli.command()
@operation_options
@click.option('--yes', '-y', is_flag=True, help='Skip confirmation prompt')
@click.pass_context
def destroy(ctx, environment, modules, dry_run, force, concurrency, version, config_path, yes):
    """Destroy modules, consumers before producers."""
    if not yes and not dry_run:
        target = ', '.join(modules) if modules else 'all modules'
        if not click.confirm(f"Destroy {target} in {environment}?", default=False):
            console.print("[yellow]Destruction cancelled[/yellow]")
            return
    _run_operation(ctx, Operation.DESTROY, environment, modules, dry_run, force, concurrency, version, config_path)


@cli.command()
@click.argument('paths', nargs=-1)
@click.option('--base', help='Compare against this git revision instead of listing paths')
@click.option('--head', default='HEAD', help='Git revision to compare with --base')
@click.option('--run', 'run_operation', type=click.Choice(['plan', 'validate', 'apply']),
              help='Run an operation on the affected modules')
@click.option('--no-dependents', is_flag=True, help='Only modules owning a changed path')
@click.option('--dry-run', is_flag=True, help='Resolve and schedule without calling the engine')
@click.option('--version', 'version', help='Configuration version recorded in history')
@config_option
@click.pass_context
def affected(ctx, paths, base, head, run_operation, no_dependents, dry_run, version, config_path):
    """Show or run the modules affected by changed paths."""
    try:
        cfg = load_config(config_path)
        orchestrator = create_orchestrator(cfg, ctx.obj.get('profile'), ctx.obj.get('region'))

        changed: List[str] = list(paths)
        if base:
            changed.extend(changed_paths_from_git(base, head, cwd=str(cfg.repo_root)))
        if not changed:
            console.print("[yellow]No changed paths given[/yellow]")
            return

        if not run_operation:
            print_change_set(orchestrator.affected(changed, include_dependents=not no_dependents))
            return

        operation = Operation(run_operation)
        options = ExecutionOptions(dry_run=dry_run, version=version)
        with LogContext(logger, holder=orchestrator.executor.holder), \
                cancel_on_interrupt(orchestrator), create_progress() as progress:
            task_id = progress.add_task(f"[cyan]Starting {operation.value}...", total=None)
            result = orchestrator.deploy_changes(changed, operation, options, RichProgressCallback(progress, task_id))

        console.print()
        print_result(result)
        if not result.is_success():
            sys.exit(1)

    except DeploymentError as e:
        console.print(f"[red]Error:[/red] {e.to_user_message()}")
        sys.exit(1)


@cli.command()
@click.option('--env', 'environment', required=True, help='Environment name')
@click.option('--to', 'target', help='Record ID or version (defaults to the last successful deployment)')
@click.option('--dry-run', is_flag=True, help='Resolve and schedule without calling the engine')
@click.option('--yes', '-y', is_flag=True, help='Skip confirmation prompt')
@config_option
@click.pass_context
def rollback(ctx, environment, target, dry_run, yes, config_path):
    """Roll an environment back to a recorded deployment."""
    try:
        cfg = load_config(config_path)
        orchestrator = create_orchestrator(cfg, ctx.obj.get('profile'), ctx.obj.get('region'))

        rollback_plan = orchestrator.rollback_manager.create_rollback_plan(environment, target)
        print_rollback_plan(rollback_plan)

        if not yes and not dry_run:
            if not click.confirm("Are you sure you want to rollback?", default=False):
                console.print("[yellow]Rollback cancelled[/yellow]")
                return

        with LogContext(logger, holder=orchestrator.executor.holder), \
                cancel_on_interrupt(orchestrator), create_progress() as progress:
            task_id = progress.add_task("[cyan]Rolling back...", total=None)
            callback = RichProgressCallback(progress, task_id, rollback_plan.get_total_operations())
            result = orchestrator.rollback_manager.execute_rollback(
                rollback_plan, ExecutionOptions(dry_run=dry_run), callback
            )

        console.print()
        print_rollback_result(result)
        if result.is_failed():
            sys.exit(1)

    except DeploymentError as e:
        console.print(f"[red]Rollback error:[/red] {e.to_user_message()}")
        sys.exit(1)


@cli.group()
def history():
    """View and prune deployment history."""
    pass


@history.command('list')
@click.option('--env', 'environment', required=True, help='Environment name')
@click.option('--limit', default=10, help='Number of deployments to show')
@config_option
@click.pass_context
def history_list(ctx, environment, limit, config_path):
    """List deployment history, newest first."""
    try:
        cfg = load_config(config_path)
        orchestrator = create_orchestrator(cfg, ctx.obj.get('profile'), ctx.obj.get('region'))
        print_records(environment, orchestrator.list_history(environment, limit=limit))
    except DeploymentError as e:
        console.print(f"[red]Error:[/red] {e.to_user_message()}")
        sys.exit(1)


@history.command('show')
@click.argument('record_id')
@click.option('--env', 'environment', required=True, help='Environment name')
@config_option
@click.pass_context
def history_show(ctx, record_id, environment, config_path):
    """Show details of a specific deployment."""
    try:
        cfg = load_config(config_path)
        orchestrator = create_orchestrator(cfg, ctx.obj.get('profile'), ctx.obj.get('region'))
        record = orchestrator.history.find(environment, record_id)
        if record is None:
            console.print(f"[red]Error:[/red] No deployment record matches '{record_id}'")
            sys.exit(1)
        print_record(record)
    except DeploymentError as e:
        console.print(f"[red]Error:[/red] {e.to_user_message()}")
        sys.exit(1)


@history.command('prune')
@click.option('--env', 'environment', required=True, help='Environment name')
@click.option('--keep-last', default=50, help='Always keep this many newest records')
@click.option('--keep-last-successful', default=10, help='Always keep this many newest successful records')
@click.option('--keep-failed-days', default=90, help='Keep failed records younger than this')
@click.option('--delete-after-days', default=365, help='Delete records older than this')
@click.option('--dry-run', is_flag=True, help='Show what would be deleted')
@config_option
@click.pass_context
def history_prune(ctx, environment, keep_last, keep_last_successful, keep_failed_days,
                  delete_after_days, dry_run, config_path):
    """Delete old deployment records and their snapshots."""
    try:
        cfg = load_config(config_path)
        orchestrator = create_orchestrator(cfg, ctx.obj.get('profile'), ctx.obj.get('region'))
        policy = RetentionPolicy(
            keep_last=keep_last,
            keep_last_successful=keep_last_successful,
            keep_failed_days=keep_failed_days,
            delete_after_days=delete_after_days
        )
        result = orchestrator.prune_history(environment, policy, dry_run=dry_run)

        verb = "Would delete" if dry_run else "Deleted"
        console.print(f"{verb} {len(result['deleted'])} record(s), kept {len(result['kept'])}")
        for record_id in result['deleted']:
            console.print(f"  [dim]{record_id}[/dim]")
    except DeploymentError as e:
        console.print(f"[red]Error:[/red] {e.to_user_message()}")
        sys.exit(1)


@cli.command()
@click.option('--env', 'environment', required=True, help='Environment name')
@click.option('--format', 'output_format', type=click.Choice(['tree', 'waves', 'dot']), default='tree',
              help='Output format')
@click.option('--output', help='Output file for dot format')
@config_option
@click.pass_context
def graph(ctx, environment, output_format, output, config_path):
    """Visualize module dependencies."""
    try:
        cfg = load_config(config_path)
        orchestrator = create_orchestrator(cfg, ctx.obj.get('profile'), ctx.obj.get('region'))
        dep_graph = orchestrator.graph(environment)

        if output_format == 'tree':
            render_tree(console, dep_graph, environment)
        elif output_format == 'waves':
            render_waves(console, dep_graph, environment)
        else:
            dot_content = generate_dot(dep_graph, environment)
            if output:
                Path(output).write_text(dot_content)
                console.print(f"[green]Graph saved to {output}[/green]")
            else:
                click.echo(dot_content)
    except DeploymentError as e:
        console.print(f"[red]Error:[/red] {e.to_user_message()}")
        sys.exit(1)


@cli.command()
@click.argument('module_path')
@click.option('--env', 'environment', required=True, help='Environment name')
@click.option('--yes', '-y', is_flag=True, help='Skip confirmation prompt')
@config_option
@click.pass_context
def unlock(ctx, module_path, environment, yes, config_path):
    """Remove a stuck lock from a module's state."""
    try:
        cfg = load_config(config_path)
        orchestrator = create_orchestrator(cfg, ctx.obj.get('profile'), ctx.obj.get('region'))

        lock = orchestrator.get_lock(environment, module_path)
        if lock is None:
            console.print(f"[yellow]{environment}/{module_path} is not locked[/yellow]")
            return

        console.print(f"Locked by [cyan]{lock.holder}[/cyan], {lock.remaining(orchestrator.executor.clock()):.0f}s remaining")
        if not yes and not click.confirm("Remove this lock?", default=False):
            console.print("[yellow]Unlock cancelled[/yellow]")
            return

        orchestrator.unlock(environment, module_path)
        console.print(f"[green]✓ Unlocked {environment}/{module_path}[/green]")
    except DeploymentError as e:
        console.print(f"[red]Error:[/red] {e.to_user_message()}")
        sys.exit(1)


if __name__ == '__main__':
    cli()
