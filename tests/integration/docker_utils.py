"""Throwaway Docker containers for integration tests."""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any
from urllib.parse import urlparse

if TYPE_CHECKING:
    from docker.client import DockerClient
    from docker.models.containers import Container
else:
    DockerClient = Any  # type: ignore[misc,assignment]
    Container = Any  # type: ignore[misc,assignment]


def connect() -> DockerClient:
    """Docker client configured from DOCKER_HOST and friends."""
    import docker

    return docker.from_env()


def published_host(client: DockerClient) -> str:
    """Host on which published ports are reachable.

    Local sockets publish on localhost; a remote daemon publishes on its own host.
    """
    base_url = client.api.base_url
    if base_url.startswith(("unix://", "npipe://", "http+docker://")):
        return "localhost"
    return urlparse(base_url).hostname or "localhost"


@dataclass
class ContainerHandle:
    container: Container
    host: str

    def host_port(self, port: int) -> int:
        self.container.reload()
        bindings = self.container.attrs["NetworkSettings"]["Ports"].get(f"{port}/tcp")
        if not bindings:
            raise RuntimeError(f"{self.container.short_id} does not publish port {port}")
        return int(bindings[0]["HostPort"])


@contextmanager
def container(
    client: DockerClient,
    image: str,
    *,
    env: dict[str, str] | None = None,
    ports: Mapping[str, int | None] | None = None,
) -> Iterator[ContainerHandle]:
    """Start a detached container and remove it, with its volumes, on exit."""
    started = client.containers.run(image, detach=True, environment=env, ports=ports)
    try:
        yield ContainerHandle(container=started, host=published_host(client))
    finally:
        started.remove(force=True, v=True)
