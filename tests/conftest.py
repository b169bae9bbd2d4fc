"""Pytest configuration and shared fixtures."""

from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

import pytest
import structlog

from devflow.engine.cleanup import CleanupCoordinator
from devflow.engine.retry import RetryPolicy
from devflow.engine.runner import TaskRunner
from devflow.exceptions import ContainerAPIError, ContainerNotFoundError
from devflow.models.domain import ExecutionContext, PortBinding
from devflow.providers.base import MANAGED_LABEL, ContainerAPI


class FakeContainerAPI(ContainerAPI):
    """In-memory container engine recording every call.

    Attributes:
        calls: ``(operation, container_id_or_image)`` tuples in call order
        containers: Live containers by id, shaped like engine inspect output
        pull_failures: Number of upcoming pulls that fail
        start_failures: Number of upcoming starts that fail
        fail_remove: Container ids whose removal fails
        log_frames: Frames yielded by ``logs``
    """

    def __init__(self) -> None:
        self.calls: list[tuple[str, str]] = []
        self.containers: dict[str, dict[str, Any]] = {}
        self.created: list[dict[str, Any]] = []
        self.pull_failures = 0
        self.start_failures = 0
        self.fail_remove: set[str] = set()
        self.log_frames: list[bytes] = []
        self.closed = False
        self._counter = 0

    async def __aenter__(self) -> "FakeContainerAPI":
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    async def close(self) -> None:
        self.closed = True

    def _get(self, container_id: str) -> dict[str, Any]:
        try:
            return self.containers[container_id]
        except KeyError:
            raise ContainerNotFoundError(f"No such container: {container_id}", status_code=404) from None

    def add_running(self, name: str) -> str:
        """Insert a running container without going through create/start."""
        self._counter += 1
        container_id = f"{self._counter:064x}"
        self.containers[container_id] = {
            "Id": container_id,
            "Name": f"/{name}",
            "Names": [f"/{name}"],
            "State": {"Running": True},
            "Labels": {MANAGED_LABEL: "true"},
        }
        return container_id

    async def pull(self, image: str) -> None:
        self.calls.append(("pull", image))
        if self.pull_failures:
            self.pull_failures -= 1
            raise ContainerAPIError(f"Failed to pull {image}: registry unavailable")

    async def create_container(
        self,
        image: str,
        name: str | None = None,
        env: dict[str, str] | None = None,
        ports: list[PortBinding] | None = None,
        labels: dict[str, str] | None = None,
    ) -> str:
        self._counter += 1
        container_id = f"{self._counter:064x}"
        self.calls.append(("create", image))
        self.created.append({"id": container_id, "image": image, "name": name, "env": env, "ports": ports})
        self.containers[container_id] = {
            "Id": container_id,
            "Name": f"/{name or container_id[:12]}",
            "Names": [f"/{name or container_id[:12]}"],
            "State": {"Running": False},
            "Labels": {**(labels or {}), MANAGED_LABEL: "true"},
        }
        return container_id

    async def start(self, container_id: str) -> None:
        self.calls.append(("start", container_id))
        container = self._get(container_id)
        if self.start_failures:
            self.start_failures -= 1
            raise ContainerAPIError("port is already allocated", status_code=500)
        container["State"]["Running"] = True

    async def stop(self, container_id: str, timeout: float = 10.0) -> None:
        self.calls.append(("stop", container_id))
        self._get(container_id)["State"]["Running"] = False

    async def remove(self, container_id: str, force: bool = False) -> None:
        self.calls.append(("remove", container_id))
        self._get(container_id)
        if container_id in self.fail_remove:
            raise ContainerAPIError("removal of container is already in progress", status_code=409)
        del self.containers[container_id]

    async def inspect(self, container_id: str) -> dict[str, Any]:
        self.calls.append(("inspect", container_id))
        for container in self.containers.values():
            if container_id in (container["Id"], container["Name"].lstrip("/")):
                return container
        raise ContainerNotFoundError(f"No such container: {container_id}", status_code=404)

    async def list_managed(self) -> list[dict[str, Any]]:
        return list(reversed(self.containers.values()))

    async def logs(
        self,
        container_id: str,
        follow: bool = False,
        timestamps: bool = False,
    ) -> AsyncIterator[bytes]:
        self.calls.append(("logs", container_id))
        for frame in self.log_frames:
            yield frame


def make_frame(stream: int, payload: str | bytes) -> bytes:
    """Build a multiplexed log frame."""
    data = payload.encode() if isinstance(payload, str) else payload
    return bytes([stream, 0, 0, 0]) + len(data).to_bytes(4, "big") + data


@pytest.fixture(autouse=True)
def reset_structlog():
    """Undo logging configuration done by a test."""
    yield
    structlog.reset_defaults()


@pytest.fixture
def frame():
    """Factory for multiplexed log frames: ``frame(stream, payload)``."""
    return make_frame


@pytest.fixture
def fake_api() -> FakeContainerAPI:
    """Fresh in-memory container engine."""
    return FakeContainerAPI()


@pytest.fixture
def cleanup(fake_api: FakeContainerAPI) -> CleanupCoordinator:
    """Fresh cleanup ledger bound to the fake engine."""
    return CleanupCoordinator(container_api=fake_api, stop_timeout=0)


@pytest.fixture
def fast_retry() -> RetryPolicy:
    """Retry policy without waits."""
    return RetryPolicy(attempts=3, initial_delay=0, max_delay=0)


@pytest.fixture
def runner(cleanup: CleanupCoordinator, fake_api: FakeContainerAPI, fast_retry: RetryPolicy) -> TaskRunner:
    """TaskRunner wired to the fake engine."""
    return TaskRunner(cleanup, container_api=fake_api, retry_policy=fast_retry)


@pytest.fixture
def context(tmp_path: Path) -> ExecutionContext:
    """Execution context rooted in a temporary directory."""
    return ExecutionContext(env={}, working_dir=str(tmp_path))
