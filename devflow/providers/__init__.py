"""Container engine providers.

Key Components:
    - ContainerAPI: Abstract interface consumed by the engine
    - DockerEngineProvider: Docker Engine REST API over the unix socket
"""

from devflow.providers.base import ContainerAPI
from devflow.providers.docker_engine import DockerEngineProvider

__all__ = ["ContainerAPI", "DockerEngineProvider"]
