"""
Domain models for the devflow workflow engine.

This module contains the data classes the engine works with: workflows and
their tasks, readiness checks, the per-run execution context, resource handles
tracked by the cleanup ledger and the scheduler's per-task nodes.

Tasks and health checks are tagged unions expressed as dataclass subclasses.
Code that dispatches on them uses ``isinstance`` checks that end in a
``ConfigurationError`` branch, so an unknown variant can never slip through.

Example:
    Building a small workflow by hand::

        workflow = Workflow(
            name="test",
            tasks=[
                ContainerTask(name="db", image="postgres:16", ports=[PortBinding(5432, 5432)]),
                CommandTask(name="tests", command="pytest", depends_on={"db"}),
            ],
        )
"""

from __future__ import annotations

import re
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Union

from devflow.enums import HealthCheckKind, NodeState, ResourceKind, ResourceState, TaskKind
from devflow.exceptions import ConfigurationError, DevFlowError

HealthPredicate = Callable[[], Union[bool, Awaitable[bool]]]

_PORT_PATTERN = re.compile(r"^(?:(?P<ip>[\d.]+):)?(?P<host>\d{1,5}):(?P<container>\d{1,5})(?:/(?P<proto>tcp|udp))?$")


# =============================================================================
# Health checks
# =============================================================================


@dataclass(frozen=True)
class HealthCheckSpec:
    """Common readiness-check settings.

    Concrete checks are TcpHealthCheck, HttpHealthCheck and CustomHealthCheck.
    """

    port: int
    """Port the service is expected to listen on."""

    host: str = "localhost"
    """Host to probe."""

    retries: int = 5
    """Number of probe attempts before the service is declared unhealthy."""

    interval: float = 2.0
    """Initial delay in seconds between probe attempts."""

    timeout: float = 30.0
    """Per-probe timeout in seconds."""

    @property
    def kind(self) -> HealthCheckKind:
        raise NotImplementedError


@dataclass(frozen=True)
class TcpHealthCheck(HealthCheckSpec):
    """Healthy once a bare TCP connection can be established."""

    @property
    def kind(self) -> HealthCheckKind:
        return HealthCheckKind.TCP


@dataclass(frozen=True)
class HttpHealthCheck(HealthCheckSpec):
    """Healthy once ``GET http://host:port/path`` answers with a status below 400."""

    path: str = "/"

    @property
    def kind(self) -> HealthCheckKind:
        return HealthCheckKind.HTTP

    @property
    def url(self) -> str:
        path = self.path if self.path.startswith("/") else f"/{self.path}"
        return f"http://{self.host}:{self.port}{path}"


@dataclass(frozen=True)
class CustomHealthCheck(HealthCheckSpec):
    """Healthy when the supplied predicate returns True.

    The predicate may be a plain function or a coroutine function. A custom
    check without a predicate is a configuration error.
    """

    predicate: HealthPredicate | None = None

    @property
    def kind(self) -> HealthCheckKind:
        return HealthCheckKind.CUSTOM


# =============================================================================
# Tasks
# =============================================================================


@dataclass(frozen=True)
class PortBinding:
    """A host-to-container port mapping, e.g. ``"5432:5432"``."""

    host_port: int
    container_port: int
    protocol: str = "tcp"
    host_ip: str = ""

    @classmethod
    def parse(cls, value: str) -> PortBinding:
        """Parse ``[ip:]host:container[/proto]``.

        Raises:
            ConfigurationError: If the value is not a valid binding
        """
        match = _PORT_PATTERN.match(value.strip())
        if not match:
            raise ConfigurationError(
                f"Invalid port binding '{value}'",
                suggestions=["Use the format hostPort:containerPort, e.g. 5432:5432"],
            )
        host_port = int(match.group("host"))
        container_port = int(match.group("container"))
        for port in (host_port, container_port):
            if not 0 < port < 65536:
                raise ConfigurationError(f"Port out of range in binding '{value}'")
        return cls(
            host_port=host_port,
            container_port=container_port,
            protocol=match.group("proto") or "tcp",
            host_ip=match.group("ip") or "",
        )

    @property
    def container_key(self) -> str:
        """Engine API key for the container side, e.g. ``5432/tcp``."""
        return f"{self.container_port}/{self.protocol}"


@dataclass
class Task:
    """Fields shared by every task kind."""

    name: str
    """Unique name within the workflow; used in ``depends_on`` references."""

    env: dict[str, str] = field(default_factory=dict)
    """Task-declared environment; overrides context and process environment."""

    depends_on: set[str] = field(default_factory=set)
    """Names of tasks that must succeed before this task becomes ready."""

    parallel: bool = False
    """Whether the task may share a wave with neighbouring parallel tasks."""

    health_check: HealthCheckSpec | None = None
    """Readiness check gating task success."""

    @property
    def kind(self) -> TaskKind:
        raise NotImplementedError


@dataclass
class CommandTask(Task):
    """Run a shell command; success means exit code 0."""

    command: str = ""
    cwd: str | None = None
    """Working directory relative to the context working directory."""

    @property
    def kind(self) -> TaskKind:
        return TaskKind.COMMAND


@dataclass
class ContainerTask(Task):
    """Pull, create and start a container."""

    image: str = ""
    container_name: str | None = None
    ports: list[PortBinding] = field(default_factory=list)

    @property
    def kind(self) -> TaskKind:
        return TaskKind.DOCKER

    @property
    def display_name(self) -> str:
        return self.container_name or self.image


@dataclass
class Workflow:
    """An ordered set of tasks.

    Order matters: without ``parallel`` on the workflow, contiguous runs of
    parallel-flagged tasks form one scheduling scope and every other task runs
    on its own, in declaration order.
    """

    name: str
    tasks: list[Task] = field(default_factory=list)
    parallel: bool = False
    description: str = ""

    def task_names(self) -> list[str]:
        return [task.name for task in self.tasks]


# =============================================================================
# Execution
# =============================================================================


@dataclass(frozen=True)
class ExecutionContext:
    """Immutable settings for one workflow run.

    Tasks never mutate the context; task-level environment is merged into a
    fresh mapping at execution time.
    """

    env: Mapping[str, str] = field(default_factory=dict)
    working_dir: str = "."
    dry_run: bool = False

    def __post_init__(self) -> None:
        # Freeze the mapping so tasks cannot mutate shared state
        object.__setattr__(self, "env", MappingProxyType(dict(self.env)))


@dataclass
class ResourceHandle:
    """A live managed resource awaiting teardown.

    A handle exists only between a confirmed successful start and a confirmed
    (or best-effort) stop.
    """

    kind: ResourceKind
    id: str
    name: str
    state: ResourceState = ResourceState.REGISTERED
    process_group: bool = False
    """For processes: the pid leads its own process group, terminate the group."""

    @classmethod
    def container(cls, container_id: str, name: str | None = None) -> ResourceHandle:
        return cls(kind=ResourceKind.CONTAINER, id=container_id, name=name or container_id[:12])

    @classmethod
    def process(cls, pid: int, name: str | None = None, process_group: bool = False) -> ResourceHandle:
        return cls(kind=ResourceKind.PROCESS, id=str(pid), name=name or str(pid), process_group=process_group)

    @property
    def released(self) -> bool:
        return self.state == ResourceState.RELEASED


@dataclass
class TaskNode:
    """Scheduler bookkeeping for one task during one run."""

    name: str
    unmet: set[str]
    state: NodeState = NodeState.PENDING


@dataclass
class TaskOutcome:
    """Result of running one task.

    Attributes:
        task_name: Name of the task that was executed.
        success: True if the task completed successfully.
        error: Failure reason when unsuccessful.
        duration: Wall-clock execution time in seconds.
    """

    task_name: str
    success: bool
    error: DevFlowError | None = None
    duration: float = 0.0


@dataclass
class WorkflowResult:
    """Summary of a successful workflow run."""

    workflow: str
    outcomes: dict[str, TaskOutcome] = field(default_factory=dict)
    waves: list[list[str]] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return all(outcome.success for outcome in self.outcomes.values())


@dataclass(frozen=True)
class LogLine:
    """One decoded container log line."""

    message: str
    is_error: bool
    timestamp: str | None = None
