"""Workflow execution engine.

This package provides the dependency-aware scheduler and everything it needs
to run tasks and keep the machine clean afterwards.

Key Components:
    - WorkflowScheduler: Resolves tasks into concurrent waves
    - TaskRunner: Executes a single command or container task
    - RetryPolicy: Bounded exponential backoff around fallible operations
    - HealthGate: Single-shot TCP, HTTP and custom readiness probes
    - CleanupCoordinator: Ledger of live resources with LIFO teardown
    - LogStreamTranscoder: Decodes multiplexed container log streams
"""

from devflow.engine.cleanup import CleanupCoordinator, CleanupReport
from devflow.engine.health import HealthGate
from devflow.engine.logs import LogStreamTranscoder
from devflow.engine.retry import RetryPolicy
from devflow.engine.runner import TaskRunner
from devflow.engine.scheduler import WorkflowScheduler

__all__ = [
    "CleanupCoordinator",
    "CleanupReport",
    "HealthGate",
    "LogStreamTranscoder",
    "RetryPolicy",
    "TaskRunner",
    "WorkflowScheduler",
]
