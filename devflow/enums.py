"""Enumerations for devflow task, health-check and resource kinds."""

from enum import Enum


class TaskKind(str, Enum):
    """Kinds of tasks a workflow can contain.

    The string values are the ones accepted in the ``type`` field of
    ``devflow.yaml``.
    """

    COMMAND = "command"
    DOCKER = "docker"

    def __str__(self) -> str:
        return self.value


class HealthCheckKind(str, Enum):
    """Readiness probe kinds."""

    TCP = "tcp"
    HTTP = "http"
    CUSTOM = "custom"

    def __str__(self) -> str:
        return self.value


class ResourceKind(str, Enum):
    """Kinds of resources tracked by the cleanup ledger."""

    CONTAINER = "container"
    PROCESS = "process"

    def __str__(self) -> str:
        return self.value


class ResourceState(str, Enum):
    """Lifecycle of a managed resource handle: REGISTERED -> RELEASED."""

    REGISTERED = "registered"
    RELEASED = "released"


class NodeState(str, Enum):
    """Scheduler state of a single task within one workflow run.

    The happy path is PENDING -> READY -> RUNNING -> SUCCEEDED.
    """

    PENDING = "pending"
    READY = "ready"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        """Check if the task has resolved."""
        return self in (NodeState.SUCCEEDED, NodeState.FAILED)
