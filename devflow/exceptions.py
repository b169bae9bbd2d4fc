"""Custom exception hierarchy for the devflow workflow engine.

This module defines the structured exception hierarchy used by the engine and
the CLI. Every error carries a human-readable message and an optional list of
suggestions that the CLI prints below the error.

Exception Hierarchy:
    DevFlowError (base)
    ├── ConfigurationError
    ├── DeadlockError
    ├── TaskError
    │   └── HealthCheckError
    ├── RetryError
    ├── WaveError
    ├── UnsafeInputError
    └── ContainerAPIError
        └── ContainerNotFoundError

Example Usage:
    >>> from devflow.exceptions import ConfigurationError
    >>> try:
    ...     load_config(path)
    ... except FileNotFoundError as e:
    ...     raise ConfigurationError(f"Config file not found: {path}") from e
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from devflow.models.domain import HealthCheckSpec


class DevFlowError(Exception):
    """Base exception for all devflow errors.

    Attributes:
        message: Human-readable error description
        suggestions: Hints shown to the user by the CLI
    """

    def __init__(self, message: str, suggestions: list[str] | None = None) -> None:
        """Initialize exception.

        Args:
            message: Error message
            suggestions: Optional hints for resolving the error
        """
        self.message = message
        self.suggestions = list(suggestions or [])
        super().__init__(message)


class ConfigurationError(DevFlowError):
    """Malformed workflow, task or health-check definition.

    Configuration errors are fatal and never retried.

    Examples:
        - Configuration file not found or not valid YAML
        - Duplicate task names in a workflow
        - Custom health check declared without a predicate
        - Retry policy with fewer than one attempt
    """

    pass


class DeadlockError(DevFlowError):
    """No task can become ready although some remain unresolved.

    Covers true dependency cycles as well as ``depends_on`` entries that name
    unknown tasks. Raised before any task of the affected workflow executes.

    Attributes:
        unresolved: Mapping of each stuck task to its still-unmet dependencies
    """

    def __init__(self, unresolved: dict[str, set[str]]) -> None:
        self.unresolved = {name: set(deps) for name, deps in unresolved.items()}
        lines = [f"  {name}: needs [{', '.join(sorted(deps))}]" for name, deps in sorted(self.unresolved.items())]
        message = "Deadlock detected. The following tasks have unmet dependencies:\n" + "\n".join(lines)
        super().__init__(
            message,
            suggestions=[
                "Check depends_on entries for typos",
                "Remove circular dependencies between tasks",
                "Declare a task before the sequential tasks that depend on it",
            ],
        )


class TaskError(DevFlowError):
    """A task failed to execute.

    Raised for non-zero exit codes, missing kind-specific fields, unsafe input
    rejected by the sanitizer and container API failures.

    Attributes:
        task_name: Name of the failing task
        exit_code: Process exit code, when the task was a command
    """

    def __init__(
        self,
        message: str,
        task_name: str,
        exit_code: int | None = None,
        suggestions: list[str] | None = None,
    ) -> None:
        self.task_name = task_name
        self.exit_code = exit_code
        super().__init__(f"Task '{task_name}' failed: {message}", suggestions=suggestions)
        # Keep the bare reason available separately from the prefixed message
        self.reason = message


class HealthCheckError(TaskError):
    """A service never became ready within its health-check retries.

    Distinct from a generic TaskError so callers can tell readiness failures
    from execution failures.

    Attributes:
        check: The health-check specification that was exhausted
    """

    def __init__(self, message: str, task_name: str, check: HealthCheckSpec) -> None:
        self.check = check
        super().__init__(
            message,
            task_name,
            suggestions=[
                f"Verify the service listens on {check.host}:{check.port}",
                "Increase health_check.retries or health_check.interval",
            ],
        )


class RetryError(DevFlowError):
    """All attempts of a retried operation failed.

    Attributes:
        attempts: Number of attempts made
        last_error: The failure raised by the final attempt
    """

    def __init__(self, message: str, attempts: int, last_error: BaseException | None) -> None:
        self.attempts = attempts
        self.last_error = last_error
        detail = f": {last_error}" if last_error is not None else ""
        super().__init__(f"{message} after {attempts} attempts{detail}")


class WaveError(DevFlowError):
    """Several tasks of the same wave failed.

    Attributes:
        errors: The individual task failures, in completion order
    """

    def __init__(self, errors: list[DevFlowError]) -> None:
        self.errors = list(errors)
        names = ", ".join(getattr(e, "task_name", "?") for e in self.errors)
        details = "\n".join(f"  - {e.message}" for e in self.errors)
        super().__init__(f"{len(self.errors)} parallel tasks failed ({names}):\n{details}")


class UnsafeInputError(DevFlowError):
    """Command, environment or path input rejected by the sanitizer."""

    pass


class ContainerAPIError(DevFlowError):
    """Container engine API call failed.

    Attributes:
        status_code: HTTP status code returned by the engine (if applicable)
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        suggestions: list[str] | None = None,
    ) -> None:
        self.status_code = status_code
        full_message = message
        if status_code:
            full_message = f"{message} (HTTP {status_code})"
        super().__init__(full_message, suggestions=suggestions)


class ContainerNotFoundError(ContainerAPIError):
    """The referenced container does not exist."""

    pass
