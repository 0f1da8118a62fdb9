"""
Container runtime discovery (Podman and Docker).

Both runtimes expose a Docker-compatible REST API on a Unix domain socket.
Every poll lists the containers labelled ``io.cryostat.discovery`` and turns
each into a target:

- ``io.cryostat.jmxUrl`` gives the connect URL directly.
- Otherwise ``io.cryostat.jmxPort`` is combined with ``io.cryostat.jmxHost``,
  or, when that label is absent, with the hostname found by inspecting the
  container.

Containers that declare a pod name (Podman pods) are grouped under one Pod
node between the realm and the target.  The observed set is reconciled
against the persisted realm subtree, so containers that vanished while the
service was down are still reported LOST on the next poll.
"""

from __future__ import annotations

import json
import os
from typing import Any, Optional

import httpx

from jvmscope.core.logging import get_logger
from jvmscope.core.urls import create_service_url, get_rmi_target, host_and_port
from jvmscope.discovery.base import DiscoveryBackend
from jvmscope.discovery.registry import BackendRegistry
from jvmscope.engine.observations import NodeSpec, Observation, TargetSpec
from jvmscope.models.node import NodeType
from jvmscope.models.target import HOST_ANNOTATION, PORT_ANNOTATION, REALM_ANNOTATION

logger = get_logger(__name__)

# ── Constants ────────────────────────────────────────────────────────────────

DISCOVERY_LABEL: str = "io.cryostat.discovery"
JMX_URL_LABEL: str = "io.cryostat.jmxUrl"
JMX_HOST_LABEL: str = "io.cryostat.jmxHost"
JMX_PORT_LABEL: str = "io.cryostat.jmxPort"

_SOCKET_BASE_URL: str = "http://d"


class ContainerDiscovery(DiscoveryBackend):
    """Shared algorithm of the socket-based container backends.

    Subclasses provide the socket path and the two query URLs.

    Args:
        settings: Application settings.
        transport: Optional httpx transport replacing the Unix socket one.
    """

    containers_path: str = ""
    container_path_template: str = ""

    def __init__(self, settings=None, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        super().__init__(settings)
        self._transport = transport

    def socket_path(self) -> str:
        raise NotImplementedError

    def container_path(self, container_id: str) -> str:
        return self.container_path_template.format(id=container_id)

    def available(self) -> bool:
        path = self.socket_path()
        return os.path.exists(path) and os.access(path, os.R_OK | os.W_OK)

    async def start(self) -> None:
        self.spawn(
            self.every(
                self.settings.CONTAINERS_POLL_PERIOD_SECONDS,
                self.resync,
                immediate=True,
            ),
            "poll",
        )
        logger.info(
            "Polling container socket %s",
            self.socket_path(),
            extra={"action": "backend_started", "target": self.realm},
        )

    def _client(self) -> httpx.AsyncClient:
        transport = self._transport or httpx.AsyncHTTPTransport(uds=self.socket_path())
        return httpx.AsyncClient(
            transport=transport,
            base_url=_SOCKET_BASE_URL,
            timeout=self.settings.CONTAINERS_REQUEST_TIMEOUT_SECONDS,
        )

    # -- Observation -----------------------------------------------------------

    async def list_observations(self, scope: Optional[str] = None) -> list[Observation]:
        """List labelled containers and convert them into observations.

        Raises:
            httpx.HTTPError: When the list or an inspect request fails.  The
                whole poll is then treated as unobserved.
        """
        async with self._client() as client:
            response = await client.get(
                self.containers_path,
                params={"filters": json.dumps({"label": [DISCOVERY_LABEL]})},
            )
            response.raise_for_status()
            containers: list[dict[str, Any]] = response.json() or []

            observations: list[Observation] = []
            for container in containers:
                observation = await self._observe_container(client, container)
                if observation is not None:
                    observations.append(observation)
        return observations

    async def _observe_container(
        self,
        client: httpx.AsyncClient,
        container: dict[str, Any],
    ) -> Optional[Observation]:
        labels: dict[str, str] = dict(container.get("Labels") or {})
        container_id: str = container.get("Id", "")
        try:
            if JMX_URL_LABEL in labels:
                connect_url = labels[JMX_URL_LABEL]
                try:
                    hostname, port = get_rmi_target(connect_url)
                except ValueError:
                    hostname, port = host_and_port(connect_url)
            else:
                port = int(labels[JMX_PORT_LABEL])
                hostname = labels.get(JMX_HOST_LABEL) or await self.inspect_hostname(
                    client, container_id
                )
                connect_url = create_service_url(hostname, port)
        except (KeyError, ValueError) as exc:
            logger.warning(
                "Container has unusable discovery labels: %s",
                exc,
                extra={"action": "container_skipped", "target": container_id},
            )
            return None

        target = TargetSpec(
            connect_url=connect_url,
            alias=self.container_alias(container),
            labels=labels,
            cryostat_annotations={
                REALM_ANNOTATION: self.realm,
                HOST_ANNOTATION: hostname,
                PORT_ANNOTATION: str(port),
            },
        )
        leaf = NodeSpec.for_target(target, NodeType.JVM)
        pod_name = container.get("PodName")
        if pod_name:
            NodeSpec(name=pod_name, node_type=NodeType.POD).add_child(leaf)
        return Observation(target=target, node=leaf)

    async def inspect_hostname(self, client: httpx.AsyncClient, container_id: str) -> str:
        """Return ``Config.Hostname`` of an inspected container.

        Raises:
            ValueError: If the inspection has no hostname.
        """
        response = await client.get(self.container_path(container_id))
        response.raise_for_status()
        hostname = ((response.json() or {}).get("Config") or {}).get("Hostname")
        if not hostname:
            raise ValueError(f"Container {container_id} has no hostname.")
        return hostname

    @staticmethod
    def container_alias(container: dict[str, Any]) -> str:
        names = container.get("Names") or []
        if names and names[0]:
            return names[0].lstrip("/")
        return container.get("Id", "")


@BackendRegistry.register
class PodmanDiscovery(ContainerDiscovery):
    """Containers of the current user's rootless Podman service."""

    name: str = "podman"
    realm: str = "Podman"
    description: str = "Labelled containers on the Podman API socket"

    containers_path: str = "/v3.0.0/libpod/containers/json"
    container_path_template: str = "/v3.0.0/libpod/containers/{id}/json"

    def enabled(self) -> bool:
        return self.settings.PODMAN_ENABLED

    def socket_path(self) -> str:
        return f"/run/user/{os.getuid()}/podman/podman.sock"


@BackendRegistry.register
class DockerDiscovery(ContainerDiscovery):
    """Containers of the local Docker daemon."""

    name: str = "docker"
    realm: str = "Docker"
    description: str = "Labelled containers on the Docker API socket"

    containers_path: str = "/v1.42/containers/json"
    container_path_template: str = "/v1.42/containers/{id}/json"

    def enabled(self) -> bool:
        return self.settings.DOCKER_ENABLED

    def socket_path(self) -> str:
        return "/var/run/docker.sock"
