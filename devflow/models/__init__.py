"""Core domain models for the devflow engine.

Key Models:
    - Workflow: Ordered set of tasks
    - CommandTask / ContainerTask: The two task kinds
    - TcpHealthCheck / HttpHealthCheck / CustomHealthCheck: Readiness checks
    - ExecutionContext: Immutable per-run settings
    - ResourceHandle: Live resource tracked by the cleanup ledger
    - TaskOutcome / WorkflowResult: Execution results

Example:
    >>> from devflow.models import CommandTask, Workflow
    >>> workflow = Workflow(name="ci", tasks=[CommandTask(name="lint", command="ruff check .")])
"""

from devflow.models.domain import (
    CommandTask,
    ContainerTask,
    CustomHealthCheck,
    ExecutionContext,
    HealthCheckSpec,
    HttpHealthCheck,
    LogLine,
    PortBinding,
    ResourceHandle,
    Task,
    TaskNode,
    TaskOutcome,
    TcpHealthCheck,
    Workflow,
    WorkflowResult,
)

__all__ = [
    "CommandTask",
    "ContainerTask",
    "CustomHealthCheck",
    "ExecutionContext",
    "HealthCheckSpec",
    "HttpHealthCheck",
    "LogLine",
    "PortBinding",
    "ResourceHandle",
    "Task",
    "TaskNode",
    "TaskOutcome",
    "TcpHealthCheck",
    "Workflow",
    "WorkflowResult",
]
