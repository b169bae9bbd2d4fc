"""Bounded exponential-backoff retries for async operations.

Wraps one fallible async operation and retries it with exponential backoff.
The engine uses it around image pulls, container starts and health polling;
shell commands are never retried.

Key Exports:
    RetryPolicy: Immutable retry parameters with an async ``run`` method.

Example:
    >>> from devflow.engine.retry import RetryPolicy
    >>>
    >>> policy = RetryPolicy(attempts=3, initial_delay=1.0, max_delay=10.0, factor=2.0)
    >>> await policy.run(lambda: api.pull("postgres:16"), description="pull postgres:16")

Thread Safety:
    A policy is immutable and safe for concurrent use. Each ``run`` call keeps
    its own attempt counter and delay.

Backoff Formula:
    The wait after failed attempt N is min(initial_delay * factor**(N-1), max_delay).
    For initial_delay=1, factor=2, max_delay=10: 1s, 2s, 4s, 8s, 10s, 10s, ...
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

import structlog

from devflow.exceptions import ConfigurationError, RetryError

log = structlog.get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Retry parameters for a single fallible operation.

    Attributes:
        attempts: Maximum number of calls, at least 1.
        initial_delay: Seconds to wait after the first failure.
        max_delay: Upper bound for any single wait.
        factor: Multiplier applied to the delay after every failure.
    """

    attempts: int = 3
    initial_delay: float = 1.0
    max_delay: float = 10.0
    factor: float = 2.0

    def __post_init__(self) -> None:
        if self.attempts < 1:
            raise ConfigurationError(f"Retry attempts must be at least 1, got {self.attempts}")
        if self.initial_delay < 0 or self.max_delay < 0:
            raise ConfigurationError("Retry delays must not be negative")
        if self.factor < 1:
            raise ConfigurationError(f"Backoff factor must be at least 1, got {self.factor}")

    def delays(self) -> list[float]:
        """Waits that precede attempts 2..N, in order."""
        waits = []
        delay = self.initial_delay
        for _ in range(self.attempts - 1):
            waits.append(min(delay, self.max_delay))
            delay *= self.factor
        return waits

    async def run(self, operation: Callable[[], Awaitable[T]], description: str = "operation") -> T:
        """Call ``operation`` until it succeeds or attempts are exhausted.

        Args:
            operation: Zero-argument callable returning a fresh awaitable on
                every call.
            description: Short label used in log events and the error message.

        Returns:
            The value returned by the first successful attempt.

        Raises:
            RetryError: After the final attempt fails. Carries the attempt
                count and the last underlying error, which is also chained
                as ``__cause__``.
            ConfigurationError: Raised by the operation; never retried.
        """
        last_error: Exception | None = None
        delay = self.initial_delay

        for attempt in range(1, self.attempts + 1):
            try:
                return await operation()
            except ConfigurationError:
                raise
            except Exception as e:
                last_error = e
                if attempt == self.attempts:
                    log.error(
                        "retry_exhausted",
                        operation=description,
                        attempts=attempt,
                        error=str(e),
                    )
                    break

                wait = min(delay, self.max_delay)
                log.warning(
                    "retry_attempt",
                    operation=description,
                    attempt=attempt,
                    max_attempts=self.attempts,
                    delay=wait,
                    error=str(e),
                )
                await asyncio.sleep(wait)
                delay *= self.factor

        raise RetryError(f"{description} failed", self.attempts, last_error) from last_error
