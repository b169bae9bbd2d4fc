"""Docker Engine provider using direct HTTP API calls over the unix socket."""

import asyncio
import json
from collections.abc import AsyncIterator
from typing import Any

import httpx
import structlog

from devflow.exceptions import ContainerAPIError, ContainerNotFoundError
from devflow.models.domain import PortBinding
from devflow.providers.base import MANAGED_LABEL, ContainerAPI

log = structlog.get_logger(__name__)

FRAME_HEADER_SIZE = 8


def split_image_reference(image: str) -> tuple[str, str | None]:
    """Split an image reference into repository and tag.

    Registry ports are not mistaken for tags and digests are passed through
    untouched.

    Example:
        >>> split_image_reference("localhost:5000/app:1.2")
        ('localhost:5000/app', '1.2')
        >>> split_image_reference("redis")
        ('redis', 'latest')
    """
    if "@" in image:
        return image, None
    repository, sep, tag = image.rpartition(":")
    if sep and "/" not in tag:
        return repository, tag
    return image, "latest"


class DockerEngineProvider(ContainerAPI):
    """ContainerAPI implementation talking to the Docker Engine REST API.

    The HTTP client is created lazily on first use (or by ``connect``) and is
    shared by all calls. Use as an async context manager to close it.
    """

    def __init__(
        self,
        socket_path: str = "/var/run/docker.sock",
        api_version: str = "1.43",
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the provider.

        Args:
            socket_path: Path of the Docker daemon's unix socket
            api_version: Engine API version used as path prefix
            timeout: Timeout in seconds for non-streaming calls
            transport: Override the transport (tests pass ``httpx.MockTransport``)
        """
        self.socket_path = socket_path
        self.api_version = api_version
        self.timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._lock = asyncio.Lock()

    async def connect(self) -> None:
        """Create the shared HTTP client."""
        async with self._lock:
            if self._client is None:
                transport = self._transport or httpx.AsyncHTTPTransport(uds=self.socket_path)
                self._client = httpx.AsyncClient(
                    transport=transport,
                    base_url=f"http://docker/v{self.api_version}",
                    timeout=self.timeout,
                )
                log.debug("docker_client_initialized", socket=self.socket_path, api_version=self.api_version)

    async def close(self) -> None:
        """Close the shared HTTP client."""
        async with self._lock:
            if self._client:
                await self._client.aclose()
                self._client = None

    async def __aenter__(self) -> "DockerEngineProvider":
        await self.connect()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            await self.connect()
        assert self._client is not None
        return self._client

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        client = await self._get_client()
        try:
            response = await client.request(method, path, **kwargs)
        except httpx.TransportError as e:
            raise self._connection_error(e) from e
        await self._raise_for_status(response, path)
        return response

    def _connection_error(self, error: Exception) -> ContainerAPIError:
        return ContainerAPIError(
            f"Cannot connect to the Docker daemon at {self.socket_path}: {error}",
            suggestions=["Start Docker and make sure the daemon is running", "Set DEVFLOW_DOCKER_HOST"],
        )

    @staticmethod
    async def _raise_for_status(response: httpx.Response, path: str) -> None:
        if response.status_code < 400:
            return
        body = await response.aread()
        try:
            message = json.loads(body).get("message", "")
        except (ValueError, AttributeError):
            message = body.decode("utf-8", errors="replace")
        if response.status_code == 404 and path.startswith("/containers/") and path != "/containers/create":
            raise ContainerNotFoundError(message or f"No such container: {path}", status_code=404)
        raise ContainerAPIError(message or f"Docker API error for {path}", status_code=response.status_code)

    async def pull(self, image: str) -> None:
        repository, tag = split_image_reference(image)
        params = {"fromImage": repository}
        if tag:
            params["tag"] = tag

        log.info("image_pull_started", image=image)
        client = await self._get_client()
        try:
            async with client.stream("POST", "/images/create", params=params, timeout=None) as response:
                await self._raise_for_status(response, "/images/create")
                async for line in response.aiter_lines():
                    if not line.strip():
                        continue
                    try:
                        progress = json.loads(line)
                    except ValueError:
                        continue
                    if "error" in progress:
                        raise ContainerAPIError(f"Failed to pull {image}: {progress['error']}")
        except httpx.TransportError as e:
            raise self._connection_error(e) from e
        log.info("image_pull_completed", image=image)

    async def create_container(
        self,
        image: str,
        name: str | None = None,
        env: dict[str, str] | None = None,
        ports: list[PortBinding] | None = None,
        labels: dict[str, str] | None = None,
    ) -> str:
        ports = ports or []
        body: dict[str, Any] = {
            "Image": image,
            "Env": [f"{key}={value}" for key, value in (env or {}).items()],
            "Labels": {**(labels or {}), MANAGED_LABEL: "true"},
            "ExposedPorts": {binding.container_key: {} for binding in ports},
            "HostConfig": {"PortBindings": {}},
        }
        for binding in ports:
            body["HostConfig"]["PortBindings"].setdefault(binding.container_key, []).append(
                {"HostIp": binding.host_ip, "HostPort": str(binding.host_port)}
            )

        params = {"name": name} if name else None
        response = await self._request("POST", "/containers/create", params=params, json=body)
        container_id = response.json()["Id"]
        log.info("container_created", container_id=container_id[:12], image=image, name=name)
        return container_id

    async def start(self, container_id: str) -> None:
        # 304 means already started
        await self._request("POST", f"/containers/{container_id}/start")
        log.info("container_started", container_id=container_id[:12])

    async def stop(self, container_id: str, timeout: float = 10.0) -> None:
        await self._request(
            "POST",
            f"/containers/{container_id}/stop",
            params={"t": int(timeout)},
            timeout=self.timeout + timeout,
        )
        log.info("container_stopped", container_id=container_id[:12])

    async def remove(self, container_id: str, force: bool = False) -> None:
        await self._request("DELETE", f"/containers/{container_id}", params={"force": str(force).lower()})
        log.info("container_removed", container_id=container_id[:12])

    async def inspect(self, container_id: str) -> dict[str, Any]:
        response = await self._request("GET", f"/containers/{container_id}/json")
        return response.json()

    async def list_managed(self) -> list[dict[str, Any]]:
        """List every container, running or not, carrying the devflow label."""
        filters = json.dumps({"label": [f"{MANAGED_LABEL}=true"]})
        response = await self._request("GET", "/containers/json", params={"all": "true", "filters": filters})
        return response.json()

    async def logs(
        self,
        container_id: str,
        follow: bool = False,
        timestamps: bool = False,
    ) -> AsyncIterator[bytes]:
        """Stream log frames, re-assembled from arbitrary HTTP chunks.

        Frame boundaries come from the big-endian payload size stored in header
        bytes 4-7.
        """
        params = {
            "stdout": "true",
            "stderr": "true",
            "follow": str(follow).lower(),
            "timestamps": str(timestamps).lower(),
        }
        client = await self._get_client()
        path = f"/containers/{container_id}/logs"
        try:
            async with client.stream("GET", path, params=params, timeout=None) as response:
                await self._raise_for_status(response, path)
                buffer = b""
                async for chunk in response.aiter_bytes():
                    buffer += chunk
                    while len(buffer) >= FRAME_HEADER_SIZE:
                        size = int.from_bytes(buffer[4:FRAME_HEADER_SIZE], "big")
                        end = FRAME_HEADER_SIZE + size
                        if len(buffer) < end:
                            break
                        yield buffer[:end]
                        buffer = buffer[end:]
        except httpx.TransportError as e:
            raise self._connection_error(e) from e
