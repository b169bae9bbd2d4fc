"""CLI entry point for devflow."""

import asyncio
import signal
import sys
from pathlib import Path
from typing import Any

import click
import structlog
from pydantic import ValidationError

from devflow.config.settings import DevFlowConfig, EngineSettings
from devflow.engine.cleanup import CleanupCoordinator, CleanupReport
from devflow.engine.logs import LogStreamTranscoder
from devflow.engine.runner import TaskRunner
from devflow.engine.scheduler import WorkflowScheduler, plan_waves, validate_workflow
from devflow.exceptions import ConfigurationError, DevFlowError
from devflow.models.domain import ExecutionContext, ResourceHandle, Workflow, WorkflowResult
from devflow.providers.docker_engine import DockerEngineProvider
from devflow.utils.logging_config import configure_logging

log = structlog.get_logger(__name__)


@click.group()
@click.option("--config", default="devflow.yaml", show_default=True, help="Path to configuration file")
@click.option("--log-level", default=None, help="Logging level (overrides DEVFLOW_LOG_LEVEL)")
@click.option(
    "--log-format",
    type=click.Choice(["console", "json"]),
    default=None,
    help="Log output format (overrides DEVFLOW_LOG_FORMAT)",
)
@click.pass_context
def cli(ctx: click.Context, config: str, log_level: str | None, log_format: str | None) -> None:
    """devflow: Local development and test environment workflows."""
    try:
        settings = EngineSettings()
    except ValidationError as e:
        click.echo(f"Error: Invalid DEVFLOW_* environment settings:\n{e}", err=True)
        sys.exit(1)

    configure_logging(log_level or settings.log_level, log_format or settings.log_format)
    ctx.obj = {"settings": settings, "config_path": Path(config)}


def _report_error(error: DevFlowError) -> None:
    click.echo(f"Error: {error.message}", err=True)
    for suggestion in error.suggestions:
        click.echo(f"  - {suggestion}", err=True)


def _load_config(ctx: click.Context) -> DevFlowConfig:
    return DevFlowConfig.from_yaml(ctx.obj["config_path"])


def _parse_env_pairs(pairs: tuple[str, ...]) -> dict[str, str]:
    env: dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise ConfigurationError(f"Invalid --env value '{pair}'", suggestions=["Use --env KEY=VALUE"])
        env[key] = value
    return env


def _docker(settings: EngineSettings) -> DockerEngineProvider:
    return DockerEngineProvider(socket_path=settings.docker_socket, api_version=settings.docker_api_version)


def _report_cleanup(report: CleanupReport) -> None:
    if report.ok:
        return
    click.echo(f"Warning: cleanup finished with {len(report.failures)} failed step(s):", err=True)
    for failure in report.failures:
        click.echo(f"  - {failure.handle.name}: {failure.step} failed: {failure.error}", err=True)


@click.command()
@click.argument("workflow")
@click.option("--dry-run", is_flag=True, help="Show what would run without side effects")
@click.option("--env", "env_pairs", multiple=True, metavar="KEY=VALUE", help="Extra environment (repeatable)")
@click.pass_context
def run(ctx: click.Context, workflow: str, dry_run: bool, env_pairs: tuple[str, ...]) -> None:
    """Run a workflow from the configuration file."""
    settings: EngineSettings = ctx.obj["settings"]
    config_path: Path = ctx.obj["config_path"]
    base_dir = config_path.resolve().parent

    try:
        config = _load_config(ctx)
        target = config.to_workflow(workflow, base_dir)
        context = ExecutionContext(env=_parse_env_pairs(env_pairs), working_dir=str(base_dir), dry_run=dry_run)
    except DevFlowError as e:
        _report_error(e)
        log.debug("run_setup_error", exc_info=True)
        sys.exit(1)

    try:
        exit_code = asyncio.run(_run_workflow(settings, target, context))
    except KeyboardInterrupt:
        click.echo("\nInterrupted by user", err=True)
        sys.exit(130)
    sys.exit(exit_code)


cli.add_command(run)
cli.add_command(run, name="test")


async def _run_workflow(settings: EngineSettings, workflow: Workflow, context: ExecutionContext) -> int:
    """Run a workflow under signal handlers and always tear down afterwards.

    Returns:
        Process exit code: 0, 1, or 128 + signal number when interrupted
    """
    docker = _docker(settings)
    cleanup = CleanupCoordinator(container_api=docker, stop_timeout=settings.stop_timeout)
    runner = TaskRunner(cleanup, container_api=docker, retry_policy=settings.retry_policy())
    scheduler = WorkflowScheduler(runner)

    loop = asyncio.get_running_loop()
    main_task = asyncio.ensure_future(scheduler.run(workflow, context))
    cleanup.install_signal_handlers(loop, main_task)

    reason = "workflow-complete"
    exit_code = 0
    result: WorkflowResult | None = None
    try:
        result = await main_task
    except asyncio.CancelledError:
        received = cleanup.received_signal or signal.SIGINT
        reason = received.name
        exit_code = 128 + received.value
        click.echo(f"\nInterrupted by {received.name}, cleaned up", err=True)
    except DevFlowError as e:
        reason = "error"
        exit_code = 1
        _report_error(e)
        log.debug("workflow_error", exc_info=True)
    except Exception as e:
        reason = "uncaught-exception"
        exit_code = 1
        click.echo(f"Unexpected error: {e}", err=True)
        log.error("workflow_unexpected_error", exc_info=True)
    finally:
        report = await cleanup.trigger(reason)
        cleanup.remove_signal_handlers(loop)
        await docker.close()

    # Teardown kills running commands, so the run may fail before it is cancelled
    if cleanup.received_signal is not None:
        exit_code = 128 + cleanup.received_signal.value
        result = None

    _report_cleanup(report)
    if result is not None:
        prefix = "[dry-run] " if context.dry_run else ""
        click.echo(
            f"{prefix}Workflow '{workflow.name}' completed: "
            f"{len(result.outcomes)} task(s) in {len(result.waves)} wave(s)"
        )
    return exit_code


@cli.command()
@click.pass_context
def validate(ctx: click.Context) -> None:
    """Validate the configuration file and every workflow in it."""
    config_path: Path = ctx.obj["config_path"]
    try:
        config = _load_config(ctx)
    except DevFlowError as e:
        _report_error(e)
        sys.exit(1)

    failed = 0
    for key in config.workflows:
        try:
            workflow = config.to_workflow(key, config_path.resolve().parent)
            validate_workflow(workflow)
            waves = plan_waves(workflow)
        except DevFlowError as e:
            failed += 1
            click.echo(f"✗ {key}", err=True)
            _report_error(e)
            continue
        click.echo(f"✓ {key}: {len(workflow.tasks)} task(s), {len(waves)} wave(s)")

    if failed:
        click.echo(f"\n{failed} of {len(config.workflows)} workflow(s) invalid", err=True)
        sys.exit(1)
    click.echo(f"\nConfiguration valid: {config.project_name} {config.version}")


@cli.command(name="list")
@click.pass_context
def list_workflows(ctx: click.Context) -> None:
    """List workflows and their tasks."""
    try:
        config = _load_config(ctx)
    except DevFlowError as e:
        _report_error(e)
        sys.exit(1)

    click.echo(f"{config.project_name} {config.version}\n")
    for key, workflow in config.workflows.items():
        title = workflow.name or key
        mode = " [parallel]" if workflow.parallel else ""
        click.echo(f"{key}: {title}{mode}")
        if workflow.description:
            click.echo(f"  {workflow.description}")
        for task in workflow.tasks:
            details = f"  - {task.name} ({task.type})"
            if task.depends_on:
                details += f" after {', '.join(task.depends_on)}"
            if task.parallel:
                details += " [parallel]"
            click.echo(details)
        click.echo("")


@cli.command()
@click.option("--force", is_flag=True, help="Do not ask for confirmation")
@click.pass_context
def clean(ctx: click.Context, force: bool) -> None:
    """Stop and remove every container started by devflow."""
    settings: EngineSettings = ctx.obj["settings"]
    try:
        containers = asyncio.run(_list_managed(settings))
    except DevFlowError as e:
        _report_error(e)
        sys.exit(1)

    if not containers:
        click.echo("No devflow-managed containers found")
        return

    names = [_container_name(container) for container in containers]
    click.echo(f"Found {len(containers)} devflow-managed container(s): {', '.join(names)}")
    if not force and not click.confirm("Stop and remove them?", default=False):
        click.echo("Aborted")
        return

    try:
        report = asyncio.run(_clean(settings, containers))
    except KeyboardInterrupt:
        click.echo("\nInterrupted by user", err=True)
        sys.exit(130)

    _report_cleanup(report)
    failed_ids = {failure.handle.id for failure in report.failures}
    removed = [handle for handle in report.released if handle.id not in failed_ids]
    click.echo(f"Removed {len(removed)} container(s)")
    if not report.ok:
        sys.exit(1)


def _container_name(container: dict[str, Any]) -> str:
    names = container.get("Names") or []
    if names:
        return names[0].lstrip("/")
    return container["Id"][:12]


async def _list_managed(settings: EngineSettings) -> list[dict[str, Any]]:
    async with _docker(settings) as docker:
        return await docker.list_managed()


async def _clean(settings: EngineSettings, containers: list[dict[str, Any]]) -> CleanupReport:
    async with _docker(settings) as docker:
        cleanup = CleanupCoordinator(container_api=docker, stop_timeout=settings.stop_timeout)
        # Engine lists newest first; register oldest first so the newest is torn down first
        for container in reversed(containers):
            cleanup.register(ResourceHandle.container(container["Id"], _container_name(container)))
        return await cleanup.trigger("clean")


@cli.command()
@click.argument("container")
@click.option("--follow", "-f", is_flag=True, help="Keep streaming new output")
@click.option("--timestamps", "-t", is_flag=True, help="Show timestamps")
@click.option("--filter", "filter_text", default=None, help="Only show lines containing this text")
@click.pass_context
def logs(ctx: click.Context, container: str, follow: bool, timestamps: bool, filter_text: str | None) -> None:
    """Stream the logs of a container."""
    settings: EngineSettings = ctx.obj["settings"]
    try:
        asyncio.run(_stream_logs(settings, container, follow, timestamps, filter_text))
    except DevFlowError as e:
        _report_error(e)
        sys.exit(1)
    except KeyboardInterrupt:
        # Ctrl-C is the normal way to end --follow
        click.echo("", err=True)


async def _stream_logs(
    settings: EngineSettings,
    container: str,
    follow: bool,
    timestamps: bool,
    filter_text: str | None,
) -> None:
    async with _docker(settings) as docker:
        info = await docker.inspect(container)
        container_id = info["Id"]
        name = info.get("Name", "").lstrip("/") or container_id[:12]
        click.echo(f"Showing logs for container {name} ({container_id[:12]})", err=True)

        transcoder = LogStreamTranscoder(
            docker.logs(container_id, follow=follow, timestamps=timestamps),
            filter_text=filter_text,
            timestamps=timestamps,
        )
        try:
            async for line in transcoder:
                prefix = f"{line.timestamp} " if line.timestamp else ""
                click.echo(f"{prefix}{line.message}", err=line.is_error)
        finally:
            await transcoder.stop()


if __name__ == "__main__":
    cli()
