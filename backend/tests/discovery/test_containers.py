"""
Tests for the Podman and Docker container backends.

The container API is served by an ``httpx.MockTransport`` so the label
handling, hostname inspection and pod grouping run without a socket.
"""

from __future__ import annotations

import json
from typing import Any

import httpx
import pytest

from jvmscope.core.urls import create_service_url
from jvmscope.discovery.containers import DISCOVERY_LABEL, DockerDiscovery, PodmanDiscovery
from jvmscope.engine.driver import ReconciliationDriver


def _container(container_id: str, name: str, pod: str = "", **labels: str) -> dict[str, Any]:
    return {
        "Id": container_id,
        "Names": [f"/{name}"],
        "PodName": pod,
        "Labels": {DISCOVERY_LABEL: "true", **labels},
    }


CONTAINERS: list[dict[str, Any]] = [
    _container("c1", "inventory", pod="shop", **{"io.cryostat.jmxPort": "9091"}),
    _container(
        "c2",
        "agent",
        **{"io.cryostat.jmxUrl": "service:jmx:rmi:///jndi/rmi://agent-host:9092/jmxrmi"},
    ),
    _container("c3", "broken", **{"io.cryostat.jmxPort": "not-a-port"}),
    _container("c4", "db", **{"io.cryostat.jmxHost": "db", "io.cryostat.jmxPort": "9093"}),
]


def _api(containers: list[dict[str, Any]], prefix: str, requests: list[httpx.Request]):
    def _handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        if request.url.path == f"{prefix}/containers/json":
            return httpx.Response(200, json=containers)
        if request.url.path == f"{prefix}/containers/c1/json":
            return httpx.Response(200, json={"Config": {"Hostname": "h1"}})
        return httpx.Response(404, json={"message": "no such container"})

    return httpx.MockTransport(_handler)


@pytest.fixture()
def requests() -> list[httpx.Request]:
    return []


@pytest.fixture()
def podman(settings, requests) -> PodmanDiscovery:
    return PodmanDiscovery(settings, transport=_api(CONTAINERS, "/v3.0.0/libpod", requests))


# ---------------------------------------------------------------------------
# Observation
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_labelled_containers_become_targets(podman: PodmanDiscovery, requests) -> None:
    observations = await podman.list_observations()

    by_alias = {obs.target.alias: obs for obs in observations}
    assert sorted(by_alias) == ["agent", "db", "inventory"]

    inventory = by_alias["inventory"].target
    assert inventory.connect_url == create_service_url("h1", 9091)
    assert inventory.cryostat_annotations == {"REALM": "Podman", "HOST": "h1", "PORT": "9091"}
    assert by_alias["agent"].target.cryostat_annotations["HOST"] == "agent-host"
    assert by_alias["db"].target.connect_url == create_service_url("db", 9093)

    filters = json.loads(requests[0].url.params["filters"])
    assert filters == {"label": [DISCOVERY_LABEL]}
    inspected = [r.url.path for r in requests if r.url.path.endswith("/c1/json")]
    assert len(inspected) == 1


@pytest.mark.asyncio
async def test_pod_members_are_grouped_under_a_pod_node(podman: PodmanDiscovery) -> None:
    observations = {obs.target.alias: obs for obs in await podman.list_observations()}

    assert [node.key for node in observations["inventory"].chain[:-1]] == [("shop", "Pod")]
    assert observations["db"].chain[:-1] == []
    assert observations["inventory"].node.node_type == "JVM"


@pytest.mark.asyncio
async def test_failed_listing_raises(settings) -> None:
    backend = DockerDiscovery(
        settings,
        transport=httpx.MockTransport(lambda request: httpx.Response(500)),
    )

    with pytest.raises(httpx.HTTPStatusError):
        await backend.list_observations()


def test_missing_socket_is_unavailable(settings, tmp_path, monkeypatch) -> None:
    backend = PodmanDiscovery(settings)
    monkeypatch.setattr(backend, "socket_path", lambda: str(tmp_path / "podman.sock"))

    assert backend.available() is False


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_stopped_container_is_reported_lost(settings, session_factory, bus, recorder, requests) -> None:
    running = list(CONTAINERS)
    backend = DockerDiscovery(settings, transport=_api(running, "/v1.42", requests))
    backend.bind(ReconciliationDriver(session_factory, bus))

    await backend.request_reconcile()
    assert len(recorder.events) == 3
    recorder.clear()

    running.remove(CONTAINERS[3])
    await backend.request_reconcile()

    assert recorder.kinds() == [("LOST", create_service_url("db", 9093))]
