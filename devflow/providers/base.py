"""
Abstract base class for container engine providers.

The engine depends on containers only through this narrow interface, never on
a concrete client, so tests can substitute an in-memory fake and other
engines (Podman, a remote daemon) can be plugged in.
"""

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from typing import Any

from devflow.models.domain import PortBinding

MANAGED_LABEL = "devflow.managed"


class ContainerAPI(ABC):
    """Container operations consumed by the TaskRunner and CleanupCoordinator.

    All methods are async. Implementations raise ``ContainerNotFoundError``
    when a referenced container does not exist and ``ContainerAPIError`` for
    any other engine failure.
    """

    @abstractmethod
    async def pull(self, image: str) -> None:
        """Pull an image, blocking until the pull completes.

        Args:
            image: Image reference, e.g. ``postgres:16`` (``latest`` if untagged).

        Raises:
            ContainerAPIError: If the engine reports a pull failure.
        """
        pass

    @abstractmethod
    async def create_container(
        self,
        image: str,
        name: str | None = None,
        env: dict[str, str] | None = None,
        ports: list[PortBinding] | None = None,
        labels: dict[str, str] | None = None,
    ) -> str:
        """Create (but do not start) a container.

        Args:
            image: Image to create the container from.
            name: Optional container name.
            env: Environment variables for the container process.
            ports: Host-to-container port bindings.
            labels: Extra labels; implementations always add ``devflow.managed``.

        Returns:
            The engine-assigned container ID.
        """
        pass

    @abstractmethod
    async def start(self, container_id: str) -> None:
        """Start a created container."""
        pass

    @abstractmethod
    async def stop(self, container_id: str, timeout: float = 10.0) -> None:
        """Stop a running container, killing it after ``timeout`` seconds."""
        pass

    @abstractmethod
    async def remove(self, container_id: str, force: bool = False) -> None:
        """Remove a container."""
        pass

    @abstractmethod
    async def inspect(self, container_id: str) -> dict[str, Any]:
        """Return the engine's description of a container.

        The result contains at least ``Id``, ``Name`` and ``State.Running``.
        """
        pass

    @abstractmethod
    def logs(
        self,
        container_id: str,
        follow: bool = False,
        timestamps: bool = False,
    ) -> AsyncIterator[bytes]:
        """Stream the container's multiplexed log output.

        Yields one frame per item: an 8-byte header whose first byte selects
        the origin stream (1 = stdout, 2 = stderr) followed by the payload.
        """
        pass
