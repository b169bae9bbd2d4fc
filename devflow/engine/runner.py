"""Execution of a single workflow task.

The TaskRunner turns one Task into a TaskOutcome. Ordinary task failures (a
non-zero exit code, a missing command or image, unsafe input, exhausted
retries, a service that never became healthy) are reported through the
outcome and never raised; only a ConfigurationError escapes, since it means
the workflow definition itself is broken.

Command tasks:
    The command runs through the system shell with the environment
    ``os.environ < context.env < task.env`` in the task's working directory.
    The process is registered with the CleanupCoordinator as soon as its pid is
    known and unregistered once it exits. Output is streamed to the logger at
    debug level and the tail is attached to the error on failure. A declared
    health check gates the task after a zero exit, for commands that start a
    background service. Commands are never retried.

Container tasks:
    The image is pulled and the container started under the engine retry
    policy. The container is registered right after a confirmed start; a
    declared health check is then polled with its own backoff policy. The
    runner never removes a started container, teardown belongs to the
    CleanupCoordinator.
"""

from __future__ import annotations

import os
import time

import structlog

from devflow.engine.cleanup import CleanupCoordinator
from devflow.engine.health import HealthGate, validate_health_check
from devflow.engine.retry import RetryPolicy
from devflow.exceptions import (
    ConfigurationError,
    ContainerAPIError,
    DevFlowError,
    HealthCheckError,
    RetryError,
    TaskError,
    UnsafeInputError,
)
from devflow.models.domain import (
    CommandTask,
    ContainerTask,
    ExecutionContext,
    HealthCheckSpec,
    ResourceHandle,
    Task,
    TaskOutcome,
)
from devflow.providers.base import ContainerAPI
from devflow.utils.async_subprocess import run_shell_command
from devflow.utils.security import Sanitizer

log = structlog.get_logger(__name__)

OUTPUT_TAIL_LINES = 20
HEALTH_BACKOFF_FACTOR = 1.5
HEALTH_MAX_DELAY = 10.0


def output_tail(output: str, lines: int = OUTPUT_TAIL_LINES) -> str:
    """Return the last ``lines`` non-empty lines of captured output."""
    kept = [line for line in output.splitlines() if line.strip()]
    return "\n".join(kept[-lines:])


class TaskRunner:
    """Executes command and container tasks.

    Args:
        cleanup: Ledger receiving handles for every started process and container.
        container_api: Engine for container tasks. Container tasks fail without one.
        health_gate: Probe used for readiness checks.
        sanitizer: Input checks applied before anything is spawned.
        retry_policy: Policy for image pulls and container starts.
    """

    def __init__(
        self,
        cleanup: CleanupCoordinator,
        container_api: ContainerAPI | None = None,
        health_gate: HealthGate | None = None,
        sanitizer: Sanitizer | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self.cleanup = cleanup
        self.container_api = container_api
        self.health_gate = health_gate or HealthGate()
        self.sanitizer = sanitizer or Sanitizer()
        self.retry_policy = retry_policy or RetryPolicy()

    async def run(self, task: Task, context: ExecutionContext) -> TaskOutcome:
        """Execute one task.

        Args:
            task: The task to execute
            context: Immutable settings of the current run

        Returns:
            The outcome. ``error`` holds a TaskError (or HealthCheckError) on failure.

        Raises:
            ConfigurationError: If the task or its health check is malformed
        """
        started = time.monotonic()
        if task.health_check is not None:
            validate_health_check(task.health_check)

        log.info("task_started", task=task.name, kind=str(task.kind), dry_run=context.dry_run)
        try:
            if isinstance(task, CommandTask):
                await self._run_command(task, context)
            elif isinstance(task, ContainerTask):
                await self._run_container(task, context)
            else:
                raise ConfigurationError(f"Unsupported task type for '{task.name}': {type(task).__name__}")
        except ConfigurationError:
            raise
        except DevFlowError as e:
            duration = time.monotonic() - started
            error = e if isinstance(e, TaskError) else TaskError(e.message, task.name, suggestions=e.suggestions)
            if error is not e:
                error.__cause__ = e
            log.error("task_failed", task=task.name, error=error.reason, duration=round(duration, 3))
            return TaskOutcome(task_name=task.name, success=False, error=error, duration=duration)

        duration = time.monotonic() - started
        log.info("task_completed", task=task.name, duration=round(duration, 3))
        return TaskOutcome(task_name=task.name, success=True, duration=duration)

    # === Command tasks ===

    async def _run_command(self, task: CommandTask, context: ExecutionContext) -> None:
        if not task.command:
            raise TaskError("no command specified", task.name)

        try:
            self.sanitizer.check_command(task.command)
            self.sanitizer.check_env({**context.env, **task.env})
            cwd = self.sanitizer.resolve_path(context.working_dir, task.cwd)
        except UnsafeInputError as e:
            raise TaskError(e.message, task.name, suggestions=e.suggestions) from e

        if context.dry_run:
            log.info("dry_run_command", task=task.name, command=task.command, cwd=str(cwd))
            return

        env = {**os.environ, **context.env, **task.env}
        handle: ResourceHandle | None = None

        def on_start(pid: int) -> None:
            nonlocal handle
            handle = ResourceHandle.process(pid, name=task.name, process_group=True)
            self.cleanup.register(handle)

        def on_output(line: str, is_stderr: bool) -> None:
            log.debug("task_output", task=task.name, stream="stderr" if is_stderr else "stdout", line=line)

        try:
            stdout, stderr, code = await run_shell_command(
                task.command,
                cwd=cwd,
                env=env,
                on_start=on_start,
                on_output=on_output,
            )
        except Exception as e:
            # The child is reaped by now; only cancellation leaves it to the ledger
            if handle is None:
                raise TaskError(f"could not start command: {e}", task.name) from e
            self.cleanup.unregister(handle.id)
            raise TaskError(f"command failed while running: {e}", task.name) from e

        if handle is not None:
            self.cleanup.unregister(handle.id)

        if code != 0:
            tail = output_tail(stderr) or output_tail(stdout)
            message = f"command exited with code {code}"
            if tail:
                message = f"{message}\n{tail}"
            raise TaskError(message, task.name, exit_code=code)

        if task.health_check is not None:
            await self._wait_healthy(task, task.health_check)

    # === Container tasks ===

    async def _run_container(self, task: ContainerTask, context: ExecutionContext) -> None:
        if not task.image:
            raise TaskError("no image specified", task.name)

        env = {**context.env, **task.env}
        try:
            self.sanitizer.check_env(env)
        except UnsafeInputError as e:
            raise TaskError(e.message, task.name, suggestions=e.suggestions) from e

        if context.dry_run:
            log.info(
                "dry_run_container",
                task=task.name,
                image=task.image,
                container_name=task.container_name,
                ports=[f"{p.host_port}:{p.container_port}" for p in task.ports],
            )
            return

        api = self.container_api
        if api is None:
            raise TaskError("no container engine configured", task.name)

        try:
            await self.retry_policy.run(lambda: api.pull(task.image), description=f"pull {task.image}")
        except RetryError as e:
            raise TaskError(f"image pull failed: {e.message}", task.name) from e

        try:
            container_id = await api.create_container(
                task.image,
                name=task.container_name,
                env=env,
                ports=task.ports,
            )
        except ContainerAPIError as e:
            raise TaskError(f"container creation failed: {e.message}", task.name) from e

        try:
            await self.retry_policy.run(lambda: api.start(container_id), description=f"start {task.display_name}")
        except RetryError as e:
            await self._discard_unstarted(api, container_id, task)
            raise TaskError(f"container start failed: {e.message}", task.name) from e

        self.cleanup.register(ResourceHandle.container(container_id, task.display_name))

        if task.health_check is not None:
            await self._wait_healthy(task, task.health_check)

    async def _discard_unstarted(self, api: ContainerAPI, container_id: str, task: ContainerTask) -> None:
        try:
            await api.remove(container_id, force=True)
        except ContainerAPIError as e:
            log.warning("container_discard_failed", task=task.name, container_id=container_id[:12], error=e.message)

    async def _wait_healthy(self, task: Task, check: HealthCheckSpec) -> None:
        policy = RetryPolicy(
            attempts=check.retries,
            initial_delay=check.interval,
            max_delay=HEALTH_MAX_DELAY,
            factor=HEALTH_BACKOFF_FACTOR,
        )

        async def attempt() -> None:
            if not await self.health_gate.probe(check):
                raise HealthCheckError(
                    f"{check.kind} probe on {check.host}:{check.port} failed",
                    task.name,
                    check,
                )

        log.info("health_check_started", task=task.name, kind=str(check.kind), port=check.port)
        try:
            await policy.run(attempt, description=f"health check for {task.name}")
        except RetryError as e:
            raise HealthCheckError(
                f"service did not become healthy after {e.attempts} attempts",
                task.name,
                check,
            ) from e
        log.info("health_check_passed", task=task.name)
