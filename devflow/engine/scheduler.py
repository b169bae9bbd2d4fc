"""
Dependency-aware workflow scheduling.

This module resolves a workflow's tasks into concurrent waves and hands every
task to the TaskRunner. It supports:

- Sequential and parallel grouping by declaration order
- Dependency-aware wave execution
- Deadlock detection before anything runs
- Per-task state transitions reported to an optional listener

Grouping:
    If the workflow itself is flagged parallel, all its tasks form a single
    scope. Otherwise every contiguous run of parallel-flagged tasks forms one
    scope and every other task is a scope of its own. Scopes execute strictly
    in declaration order.

Execution Flow:
    1. The workflow is validated (unique task names, usable health checks)
    2. The whole schedule is simulated; any task that could never become
       ready raises DeadlockError before a single task runs
    3. Within each scope, tasks whose dependencies have all succeeded form
       the next wave; the wave is started concurrently and awaited as a whole
    4. The loop repeats until the scope is resolved, then moves to the next

Error Handling:
    - A failed task fails the workflow, but tasks already running in the same
      wave are allowed to finish; no later wave is started
    - A single failure is raised as-is, several failures in one wave raise
      WaveError carrying every cause
    - The scheduler never triggers cleanup; that is left to the caller

Example:
    >>> scheduler = WorkflowScheduler(TaskRunner(cleanup, container_api=docker))
    >>> result = await scheduler.run(workflow, ExecutionContext(env={"CI": "1"}))
    >>> result.waves
    [['db'], ['migrate'], ['tests']]
"""

from __future__ import annotations

import asyncio
from collections import Counter
from collections.abc import Callable

import structlog

from devflow.engine.health import validate_health_check
from devflow.engine.runner import TaskRunner
from devflow.enums import NodeState
from devflow.exceptions import ConfigurationError, DeadlockError, DevFlowError, WaveError
from devflow.models.domain import ExecutionContext, Task, TaskNode, TaskOutcome, Workflow, WorkflowResult

log = structlog.get_logger(__name__)

TransitionListener = Callable[[str, NodeState], None]


def group_scopes(workflow: Workflow) -> list[list[Task]]:
    """Split a workflow into scheduling scopes, in execution order.

    Args:
        workflow: The workflow to split.

    Returns:
        List of scopes. Each scope is a list of tasks in declaration order.

    Example:
        >>> # tasks: a, b(parallel), c(parallel), d
        >>> [[t.name for t in scope] for scope in group_scopes(workflow)]
        [['a'], ['b', 'c'], ['d']]
    """
    if workflow.parallel:
        return [list(workflow.tasks)] if workflow.tasks else []

    scopes: list[list[Task]] = []
    current: list[Task] = []
    for task in workflow.tasks:
        if task.parallel:
            current.append(task)
            continue
        if current:
            scopes.append(current)
            current = []
        scopes.append([task])
    if current:
        scopes.append(current)
    return scopes


def validate_workflow(workflow: Workflow) -> None:
    """Check a workflow for definition errors.

    Raises:
        ConfigurationError: On duplicate task names or an unusable health check.
    """
    duplicates = sorted(name for name, count in Counter(workflow.task_names()).items() if count > 1)
    if duplicates:
        raise ConfigurationError(
            f"Duplicate task names in workflow '{workflow.name}': {', '.join(duplicates)}",
            suggestions=["Give every task in a workflow a unique name"],
        )
    for task in workflow.tasks:
        if task.health_check is not None:
            try:
                validate_health_check(task.health_check)
            except ConfigurationError as e:
                raise ConfigurationError(f"Task '{task.name}': {e.message}", suggestions=e.suggestions) from e


def plan_waves(workflow: Workflow) -> list[list[str]]:
    """Simulate the schedule without running anything.

    Every task is assumed to succeed. A task whose dependencies are unknown,
    circular, or only satisfiable by a task in a later sequential scope is
    unresolved.

    Args:
        workflow: The workflow to simulate.

    Returns:
        The waves the workflow would execute, as lists of task names.

    Raises:
        DeadlockError: Naming every unresolved task with its unmet dependencies.
    """
    succeeded: set[str] = set()
    unresolved: dict[str, set[str]] = {}
    waves: list[list[str]] = []

    for scope in group_scopes(workflow):
        pending = {task.name: task for task in scope}
        while pending:
            ready = [name for name, task in pending.items() if not (task.depends_on - succeeded)]
            if not ready:
                for name, task in pending.items():
                    unresolved[name] = task.depends_on - succeeded
                break
            waves.append(ready)
            for name in ready:
                succeeded.add(name)
                del pending[name]

    if unresolved:
        log.error("dependency_deadlock", workflow=workflow.name, unresolved=sorted(unresolved))
        raise DeadlockError(unresolved)
    return waves


class WorkflowScheduler:
    """Runs workflows wave by wave on top of a TaskRunner.

    The scheduler owns the TaskNode state of one run at a time. Concurrency is
    bounded only by the width of each wave.

    Attributes:
        runner: Executes individual tasks.
        on_transition: Optional listener called with ``(task_name, state)``
            on every node state change.

    Example:
        >>> seen = []
        >>> scheduler = WorkflowScheduler(runner, on_transition=lambda n, s: seen.append((n, s)))
    """

    def __init__(self, runner: TaskRunner, on_transition: TransitionListener | None = None) -> None:
        """Initialize the scheduler.

        Args:
            runner: TaskRunner used for every task.
            on_transition: Optional state-transition listener.
        """
        self.runner = runner
        self.on_transition = on_transition

    def _transition(self, node: TaskNode, state: NodeState) -> None:
        node.state = state
        log.debug("task_state_changed", task=node.name, state=state.value)
        if self.on_transition is not None:
            self.on_transition(node.name, state)

    async def run(self, workflow: Workflow, context: ExecutionContext) -> WorkflowResult:
        """Execute a workflow to completion.

        The run either succeeds as a whole or raises; partial results are
        never reported.

        Args:
            workflow: The workflow to execute.
            context: Immutable settings shared by all tasks of this run.

        Returns:
            WorkflowResult with one successful outcome per task and the waves
            that were executed.

        Raises:
            ConfigurationError: If the workflow definition is invalid.
            DeadlockError: If some task could never become ready.
            TaskError: If exactly one task of a wave failed.
            WaveError: If several tasks of the same wave failed.
        """
        validate_workflow(workflow)
        plan_waves(workflow)

        log.info(
            "workflow_started",
            workflow=workflow.name,
            total_tasks=len(workflow.tasks),
            dry_run=context.dry_run,
        )

        result = WorkflowResult(workflow=workflow.name)
        succeeded: set[str] = set()

        for scope in group_scopes(workflow):
            nodes = {task.name: TaskNode(name=task.name, unmet=task.depends_on - succeeded) for task in scope}
            tasks = {task.name: task for task in scope}

            while any(node.state == NodeState.PENDING for node in nodes.values()):
                for node in nodes.values():
                    node.unmet -= succeeded
                ready = [node for node in nodes.values() if node.state == NodeState.PENDING and not node.unmet]

                if not ready:
                    # Unreachable after plan_waves unless the workflow changed mid-run
                    stuck = {node.name: set(node.unmet) for node in nodes.values() if not node.state.is_terminal}
                    log.error("dependency_deadlock", workflow=workflow.name, unresolved=sorted(stuck))
                    raise DeadlockError(stuck)

                for node in ready:
                    self._transition(node, NodeState.READY)

                wave = [node.name for node in ready]
                result.waves.append(wave)
                log.info("wave_started", workflow=workflow.name, wave=len(result.waves), tasks=wave)

                outcomes = await asyncio.gather(
                    *(self._execute(tasks[node.name], node, context) for node in ready),
                    return_exceptions=True,
                )

                failures: list[DevFlowError] = []
                for node, outcome in zip(ready, outcomes):
                    if isinstance(outcome, BaseException):
                        # Raised by the runner itself (ConfigurationError)
                        raise outcome
                    result.outcomes[node.name] = outcome
                    if outcome.success:
                        succeeded.add(node.name)
                    elif outcome.error is not None:
                        failures.append(outcome.error)

                if failures:
                    log.error(
                        "workflow_failed",
                        workflow=workflow.name,
                        wave=len(result.waves),
                        failed_tasks=[getattr(e, "task_name", None) for e in failures],
                    )
                    if len(failures) == 1:
                        raise failures[0]
                    raise WaveError(failures)

        log.info("workflow_completed", workflow=workflow.name, waves=len(result.waves))
        return result

    async def _execute(self, task: Task, node: TaskNode, context: ExecutionContext) -> TaskOutcome:
        self._transition(node, NodeState.RUNNING)
        try:
            outcome = await self.runner.run(task, context)
        except BaseException:
            self._transition(node, NodeState.FAILED)
            raise
        self._transition(node, NodeState.SUCCEEDED if outcome.success else NodeState.FAILED)
        return outcome
