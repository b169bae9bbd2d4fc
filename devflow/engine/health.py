"""Readiness probes for services started by container tasks.

The HealthGate performs exactly one probe per call and reports a boolean. It
is not retry-aware: the TaskRunner wraps probes in a RetryPolicy built from the
check's ``retries`` and ``interval``.

Probe kinds:
    - TCP: a bare connection to host:port within the probe timeout
    - HTTP: ``GET http://host:port/path`` within the timeout, healthy below 400
    - Custom: the supplied predicate's result, sync or async

Example:
    >>> gate = HealthGate()
    >>> await gate.probe(TcpHealthCheck(port=5432))
    True
"""

from __future__ import annotations

import asyncio
import inspect

import httpx
import structlog

from devflow.exceptions import ConfigurationError
from devflow.models.domain import CustomHealthCheck, HealthCheckSpec, HttpHealthCheck, TcpHealthCheck

log = structlog.get_logger(__name__)


def validate_health_check(check: HealthCheckSpec) -> None:
    """Reject health-check definitions that can never be probed.

    Raises:
        ConfigurationError: For a custom check without a predicate, or a
            check with fewer than one retry.
    """
    if isinstance(check, CustomHealthCheck) and check.predicate is None:
        raise ConfigurationError(
            "Custom health check requires a predicate",
            suggestions=["Set health_check.predicate to a 'module:function' import path"],
        )
    if check.retries < 1:
        raise ConfigurationError(f"Health check retries must be at least 1, got {check.retries}")


class HealthGate:
    """Single-shot readiness probe for TCP, HTTP and custom checks."""

    def __init__(self, http_client: httpx.AsyncClient | None = None) -> None:
        """Initialize the gate.

        Args:
            http_client: Optional shared client for HTTP probes. When omitted a
                short-lived client is created per probe.
        """
        self._http_client = http_client

    async def probe(self, check: HealthCheckSpec) -> bool:
        """Probe a service once.

        Args:
            check: The readiness check to perform.

        Returns:
            True if the service is ready. Probe failures of any kind
            (refused connections, timeouts, predicate exceptions) yield False.

        Raises:
            ConfigurationError: Raised immediately, before any network
                activity, for a custom check without a predicate.
        """
        validate_health_check(check)
        log.debug("health_probe", kind=str(check.kind), host=check.host, port=check.port)

        try:
            if isinstance(check, TcpHealthCheck):
                healthy = await self._check_tcp(check)
            elif isinstance(check, HttpHealthCheck):
                healthy = await self._check_http(check)
            elif isinstance(check, CustomHealthCheck):
                healthy = await self._check_custom(check)
            else:
                raise ConfigurationError(f"Unsupported health check type: {type(check).__name__}")
        except ConfigurationError:
            raise
        except Exception as e:
            log.debug("health_probe_failed", host=check.host, port=check.port, error=str(e))
            return False

        if healthy:
            log.debug("health_probe_passed", host=check.host, port=check.port)
        return healthy

    async def _check_tcp(self, check: TcpHealthCheck) -> bool:
        try:
            _, writer = await asyncio.wait_for(
                asyncio.open_connection(check.host, check.port),
                timeout=check.timeout,
            )
        except (OSError, TimeoutError):
            return False

        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass
        return True

    async def _check_http(self, check: HttpHealthCheck) -> bool:
        try:
            if self._http_client is not None:
                response = await self._http_client.get(check.url, timeout=check.timeout)
            else:
                async with httpx.AsyncClient(timeout=check.timeout) as client:
                    response = await client.get(check.url)
        except httpx.HTTPError:
            return False
        return response.status_code < 400

    async def _check_custom(self, check: CustomHealthCheck) -> bool:
        assert check.predicate is not None
        result = check.predicate()
        if inspect.isawaitable(result):
            result = await asyncio.wait_for(result, timeout=check.timeout)
        return bool(result)
