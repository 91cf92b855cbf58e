"""Main CLI entry point."""

import sys
from dataclasses import dataclass
from typing import List, Optional

import click
from rich.console import Console
from rich.progress import Progress, SpinnerColumn, TextColumn, BarColumn, TaskProgressColumn
from rich.panel import Panel

from fleetdeploy.utils.logging import setup_logging, get_logger
from fleetdeploy.utils.errors import DeploymentError, UnsafeStateError, error_handler
from fleetdeploy.utils.retry import RetryStrategy
from fleetdeploy.config.parser import Config, ConfigValidationError, DEFAULT_CONFIG_FILE
from fleetdeploy.remote.context import RemoteContext, StepTimeouts
from fleetdeploy.remote.runner import FabricRemoteRunner, RemoteRunner, RetryingRunner
from fleetdeploy.remote.repository import RemoteRepository, validate_sha
from fleetdeploy.orchestrator.cleaner import StackCleaner
from fleetdeploy.orchestrator.controller import DeploymentController
from fleetdeploy.orchestrator.critical import CriticalStackDetector
from fleetdeploy.orchestrator.detector import ChangeDetector
from fleetdeploy.orchestrator.executor import ParallelExecutor
from fleetdeploy.orchestrator.health import HealthClassifier
from fleetdeploy.orchestrator.models import (
    DeploymentRequest,
    DeploymentStatus,
    ExecutionStatus,
    Operation,
    UNKNOWN_REVISION,
    detection_outputs,
    health_outputs,
    json_list,
)
from fleetdeploy.cli.output import (
    parse_stack_list,
    show_detection,
    show_execution,
    show_health,
    show_report,
    write_outputs,
)

console = Console()
logger = get_logger(__name__)


@dataclass
class Components:
    """Object graph for one invocation."""
    config: Config
    context: RemoteContext
    runner: RemoteRunner
    repository: RemoteRepository
    cleaner: StackCleaner
    detector: ChangeDetector
    executor: ParallelExecutor
    health: HealthClassifier
    critical: CriticalStackDetector


@click.group()
@click.option('--config', 'config_path', default=DEFAULT_CONFIG_FILE, help='Path to configuration file')
@click.option('--host', help='Deployment host (overrides ssh.host)')
@click.option('--user', help='SSH user (overrides ssh.user)')
@click.option('--port', type=int, help='SSH port (overrides ssh.port)')
@click.option('--log-level', default='info', type=click.Choice(['debug', 'info', 'warning', 'error']))
@click.option('--log-dir', default='.fleetdeploy/logs', help='Directory for JSON log files')
@click.pass_context
def cli(ctx, config_path, host, user, port, log_level, log_dir):
    """Deploy docker-compose stacks to a remote host."""
    ctx.ensure_object(dict)
    ctx.obj['config_path'] = config_path
    ctx.obj['host'] = host
    ctx.obj['user'] = user
    ctx.obj['port'] = port

    setup_logging(log_level, log_dir)


def load_config(config_path: str = DEFAULT_CONFIG_FILE) -> Config:
    """Load and validate configuration file."""
    try:
        return Config(config_path).load()
    except ConfigValidationError as e:
        console.print("[red]Configuration validation failed:[/red]\n")
        console.print(str(e))
        sys.exit(1)


def build_components(ctx) -> Components:
    """Create every component from configuration and command line overrides."""
    cfg = load_config(ctx.obj['config_path'])
    fleet = cfg.fleet

    host = ctx.obj.get('host') or fleet.ssh.host
    if not host:
        console.print("[red]Error:[/red] No deployment host given (use --host or ssh.host)")
        sys.exit(1)

    context = RemoteContext(
        host=host,
        user=ctx.obj.get('user') or fleet.ssh.user,
        port=ctx.obj.get('port') or fleet.ssh.port,
        compose_root=fleet.compose.root,
        definition_file=fleet.compose.definition_file,
        secret_env=cfg.secret_env(),
        secret_command_prefix=fleet.secrets.render_prefix(),
        timeouts=StepTimeouts(**fleet.timeouts.model_dump()),
        connect_timeout=fleet.ssh.connect_timeout,
        key_filename=fleet.ssh.key_filename,
        management_root=fleet.compose.management_root,
    )
    strategy = RetryStrategy(
        max_attempts=fleet.retry.max_attempts,
        initial_delay=fleet.retry.initial_delay,
        backoff_factor=fleet.retry.backoff_factor,
        max_delay=fleet.retry.max_delay,
    )
    runner = RetryingRunner(FabricRemoteRunner(context), strategy)
    repository = RemoteRepository(runner, context)
    cleaner = StackCleaner(runner, context)

    return Components(
        config=cfg,
        context=context,
        runner=runner,
        repository=repository,
        cleaner=cleaner,
        detector=ChangeDetector(repository, cleaner),
        executor=ParallelExecutor(
            runner,
            context,
            max_workers=fleet.compose.max_workers,
            compose_args=fleet.compose.compose_args,
        ),
        health=HealthClassifier(runner, context),
        critical=CriticalStackDetector(runner, context),
    )


def resolve_critical(components: Components, stacks: List[str], extra: List[str],
                     detect: bool) -> List[str]:
    """Critical stacks from configuration, options and (optionally) labels."""
    critical = list(components.config.fleet.critical_stacks)
    critical.extend(extra)
    if detect or components.config.fleet.detect_critical:
        critical.extend(components.critical.detect(stacks))
    seen = set()
    return [name for name in critical if not (name in seen or seen.add(name))]


class RichProgressCallback:
    """Progress callback that displays per-stack updates using Rich."""

    def __init__(self, progress: Progress, task_id, total: int):
        self.progress = progress
        self.task_id = task_id
        self.total = total
        self.started = 0
        self.completed = 0
        self.progress.update(task_id, total=total)

    def __call__(self, stack_name: str, status: ExecutionStatus, message: Optional[str]):
        if status == ExecutionStatus.IN_PROGRESS:
            self.started += 1
            # A rollback after a failed deploy reuses the same bar
            if self.started > self.total:
                self.total = self.started
                self.progress.update(self.task_id, total=self.total)
            self.progress.update(self.task_id, description=f"[cyan]Started:[/cyan] {stack_name}")
            return
        self.completed += 1
        mark = "[green]✓[/green]" if status == ExecutionStatus.SUCCESS else "[red]✗[/red]"
        self.progress.update(self.task_id, completed=self.completed,
                             description=f"{mark} {stack_name}")


def _progress() -> Progress:
    return Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        TaskProgressColumn(),
        console=console,
    )


def _abort(error: DeploymentError, outputs: Optional[dict] = None) -> None:
    error_handler.log_error(error)
    console.print(error.to_user_message(), style="red", markup=False)
    if outputs:
        write_outputs(outputs)
    sys.exit(1)


@cli.command()
@click.option('--previous', 'previous_revision', default=UNKNOWN_REVISION, show_default=True,
              help='Currently deployed revision')
@click.option('--target', 'target_revision', required=True, help='Revision being deployed')
@click.option('--stacks', default='', help='Requested stacks (JSON array or comma separated)')
@click.option('--deleted-files', default='', help='Deleted repository paths (JSON array)')
@click.option('--cleanup/--no-cleanup', default=True, help='Tear down removed stacks')
@click.pass_context
def detect(ctx, previous_revision, target_revision, stacks, deleted_files, cleanup):
    """Detect removed, new and existing stacks."""
    components = build_components(ctx)
    try:
        result = components.detector.detect(
            previous_revision,
            target_revision,
            parse_stack_list(stacks),
            parse_stack_list(deleted_files),
            cleanup=cleanup,
        )
    except DeploymentError as e:
        _abort(e)
        return

    show_detection(result)
    write_outputs(detection_outputs(result))


@cli.command()
@click.argument('stack')
@click.pass_context
def cleanup(ctx, stack):
    """Tear down one stack."""
    components = build_components(ctx)
    try:
        result = components.cleaner.cleanup(stack)
    except DeploymentError as e:
        _abort(e)
        return

    if result.succeeded:
        note = " (already removed)" if result.already_removed else ""
        console.print(f"[green]✓[/green] {stack} cleaned up{note}")
    else:
        console.print(f"[red]✗[/red] {stack}: {result.message}")
        sys.exit(1)


@cli.command()
@click.option('--target', 'target_revision', required=True, help='Revision to deploy')
@click.option('--stacks', required=True, help='Stacks to deploy (JSON array or comma separated)')
@click.pass_context
def deploy(ctx, target_revision, stacks):
    """Check out a revision and deploy stacks in parallel."""
    components = build_components(ctx)
    names = parse_stack_list(stacks)

    console.print(Panel.fit(
        f"[bold]Deploying {len(names)} stacks[/bold]\n"
        f"Host: {components.context.host}\n"
        f"Revision: {target_revision}",
        title="Deployment",
        border_style="cyan",
    ))

    try:
        components.repository.update_to(target_revision)
        with _progress() as progress:
            task_id = progress.add_task("[cyan]Deploying...", total=None)
            report = components.executor.run(
                names, Operation.DEPLOY,
                progress_callback=RichProgressCallback(progress, task_id, len(names)),
            )
    except DeploymentError as e:
        _abort(e, {'deployment_status': DeploymentStatus.FAILED.value})
        return

    show_execution(report)
    write_outputs({'deployment_status': report.status.value})
    if not report.is_success():
        sys.exit(1)


@cli.command()
@click.option('--previous', 'previous_revision', required=True, help='Revision to roll back to')
@click.option('--critical', 'critical_stacks', multiple=True, help='Critical stack (repeatable)')
@click.pass_context
def rollback(ctx, previous_revision, critical_stacks):
    """Check out the previous revision and redeploy every stack it defines."""
    if previous_revision == UNKNOWN_REVISION or not validate_sha(previous_revision):
        console.print(f"[red]Error:[/red] Rollback needs a full commit SHA, got {previous_revision!r}")
        sys.exit(1)

    components = build_components(ctx)
    try:
        components.repository.update_to(previous_revision)
        discovered = components.repository.tree_stacks(previous_revision)
        if not discovered:
            console.print(f"[red]Error:[/red] No stacks found in {previous_revision}")
            sys.exit(1)
        critical = resolve_critical(components, discovered, list(critical_stacks), False)

        with _progress() as progress:
            task_id = progress.add_task("[cyan]Rolling back...", total=None)
            report = components.executor.run(
                discovered, Operation.ROLLBACK,
                progress_callback=RichProgressCallback(progress, task_id, len(discovered)),
            )
    except DeploymentError as e:
        _abort(e, {'deployment_status': DeploymentStatus.FAILED.value})
        return

    show_execution(report)
    outputs = {'discovered_rollback_stacks': json_list(discovered)}
    unsafe = [name for name in report.failed if name in critical]
    if unsafe:
        outputs['deployment_status'] = DeploymentStatus.CRITICAL_FAILURE.value
        write_outputs(outputs)
        _abort(UnsafeStateError(
            f"Critical stacks failed to roll back ({', '.join(unsafe)}): "
            f"unsafe state - manual intervention required"
        ))
        return

    outputs['deployment_status'] = (DeploymentStatus.ROLLED_BACK.value if report.is_success()
                                    else DeploymentStatus.FAILED.value)
    write_outputs(outputs)
    if not report.is_success():
        sys.exit(1)


@cli.command()
@click.option('--stacks', required=True, help='Stacks to check (JSON array or comma separated)')
@click.option('--critical', 'critical_stacks', multiple=True, help='Critical stack (repeatable)')
@click.option('--detect-critical', is_flag=True, help='Also treat label-marked stacks as critical')
@click.option('--management', is_flag=True, help='Check the management stack first')
@click.pass_context
def health(ctx, stacks, critical_stacks, detect_critical, management):
    """Classify the health of deployed stacks."""
    components = build_components(ctx)
    names = parse_stack_list(stacks)
    critical = resolve_critical(components, names, list(critical_stacks), detect_critical)

    summary = components.health.classify(names, critical, include_management=management)
    show_health(summary)
    write_outputs(health_outputs(summary))
    if summary.has_failures():
        sys.exit(1)


@cli.command()
@click.option('--stacks', required=True, help='Stacks to inspect (JSON array or comma separated)')
@click.pass_context
def critical(ctx, stacks):
    """List stacks whose services are labelled critical."""
    components = build_components(ctx)
    found = components.critical.detect(parse_stack_list(stacks))
    if found:
        console.print(f"[magenta]Critical stacks:[/magenta] {', '.join(found)}")
    else:
        console.print("[dim]No critical stacks found[/dim]")
    write_outputs({'critical_stacks': json_list(found)})


@cli.command()
@click.pass_context
def management(ctx):
    """Pull and start the stack-management UI stack (compose.management_root)."""
    components = build_components(ctx)
    try:
        with _progress() as progress:
            task_id = progress.add_task("[cyan]Deploying management stack...", total=None)
            report = components.executor.deploy_management(
                progress_callback=RichProgressCallback(progress, task_id, 1),
            )
    except DeploymentError as e:
        _abort(e, {'deployment_status': DeploymentStatus.FAILED.value})
        return

    show_execution(report)
    write_outputs({'deployment_status': report.status.value})
    if not report.is_success():
        sys.exit(1)


@cli.command()
@click.option('--previous', 'previous_revision', default=UNKNOWN_REVISION, show_default=True,
              help='Currently deployed revision')
@click.option('--target', 'target_revision', required=True, help='Revision being deployed')
@click.option('--stacks', required=True, help='Stacks to deploy (JSON array or comma separated)')
@click.option('--deleted-files', default='', help='Deleted repository paths (JSON array)')
@click.option('--critical', 'critical_stacks', multiple=True, help='Critical stack (repeatable)')
@click.option('--detect-critical', is_flag=True, help='Also treat label-marked stacks as critical')
@click.option('--management', is_flag=True, help='Include the management stack in health checks')
@click.pass_context
def run(ctx, previous_revision, target_revision, stacks, deleted_files, critical_stacks,
        detect_critical, management):
    """Detect, clean up, deploy, health-check and roll back if needed."""
    components = build_components(ctx)
    names = parse_stack_list(stacks)
    # Labels are scanned by the controller once the target revision is checked out
    critical = list(components.config.fleet.critical_stacks) + list(critical_stacks)

    controller = DeploymentController(
        components.repository,
        components.detector,
        components.executor,
        components.health,
        critical=components.critical,
    )
    request = DeploymentRequest(
        target_revision=target_revision,
        previous_revision=previous_revision,
        stacks=names,
        deleted_files=parse_stack_list(deleted_files),
        critical_stacks=critical,
        detect_critical=detect_critical or components.config.fleet.detect_critical,
        include_management=management,
    )

    with _progress() as progress:
        task_id = progress.add_task("[cyan]Deploying...", total=None)
        report = controller.run(request, RichProgressCallback(progress, task_id, len(names)))

    show_report(report)
    write_outputs(report.to_outputs())
    if report.status != DeploymentStatus.SUCCESS:
        sys.exit(1)


if __name__ == '__main__':
    cli()
