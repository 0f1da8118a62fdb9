"""
Tests for the discovery event bus.

Covers per-scope ordering, cross-scope concurrency, subscriber isolation,
and the JSON shape of published events.
"""

from __future__ import annotations

import asyncio

import pytest

from jvmscope.core.events import EventBus, EventKind, TargetDiscoveryEvent

URL = "service:jmx:rmi:///jndi/rmi://a:9091/jmxrmi"


def _event(kind: EventKind = EventKind.FOUND) -> TargetDiscoveryEvent:
    return TargetDiscoveryEvent(
        kind=kind,
        connect_url=URL,
        alias="a",
        realm="JDP",
        target_id=7,
        labels={"app": "a"},
        annotations={"platform": {}, "cryostat": {"REALM": "JDP"}},
    )


# ---------------------------------------------------------------------------
# Serialisation
# ---------------------------------------------------------------------------


def test_event_payload_shape() -> None:
    payload = _event(EventKind.LOST).to_dict()

    assert payload["event"] == "LOST"
    assert payload["target"]["connectUrl"] == URL
    assert payload["target"]["realm"] == "JDP"
    assert payload["target"]["id"] == 7
    assert "timestamp" in payload


# ---------------------------------------------------------------------------
# Fan-out
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_failing_subscriber_does_not_affect_others() -> None:
    bus = EventBus()
    received: list[str] = []

    async def _broken(event: TargetDiscoveryEvent) -> None:
        raise RuntimeError("subscriber down")

    async def _healthy(event: TargetDiscoveryEvent) -> None:
        received.append(event.kind.value)

    bus.subscribe(_broken)
    bus.subscribe(_healthy)

    await bus.publish([_event(EventKind.FOUND), _event(EventKind.LOST)])

    assert received == ["FOUND", "LOST"]
    await bus.close()


@pytest.mark.asyncio
async def test_unsubscribed_callbacks_receive_nothing() -> None:
    bus = EventBus()
    received: list[TargetDiscoveryEvent] = []

    async def _collect(event: TargetDiscoveryEvent) -> None:
        received.append(event)

    bus.subscribe(_collect)
    bus.unsubscribe(_collect)
    await bus.publish([_event()])

    assert received == []
    await bus.close()


# ---------------------------------------------------------------------------
# Scoped execution
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_jobs_of_one_scope_run_in_submission_order() -> None:
    bus = EventBus()
    order: list[int] = []
    running: list[int] = []

    def _job(n: int):
        async def _run() -> int:
            running.append(n)
            assert len(running) == 1
            await asyncio.sleep(0)
            order.append(n)
            running.remove(n)
            return n

        return _run

    futures = [bus.submit("KubernetesApi/ns1", _job(n)) for n in range(5)]
    results = await asyncio.gather(*futures)

    assert results == [0, 1, 2, 3, 4]
    assert order == [0, 1, 2, 3, 4]
    await bus.close()


@pytest.mark.asyncio
async def test_scopes_run_concurrently() -> None:
    """A blocked scope does not hold up another one."""
    bus = EventBus()
    gate = asyncio.Event()

    async def _blocked() -> str:
        await gate.wait()
        return "ns1"

    async def _quick() -> str:
        return "ns2"

    blocked = bus.submit("KubernetesApi/ns1", _blocked)
    quick = bus.submit("KubernetesApi/ns2", _quick)

    assert await asyncio.wait_for(quick, timeout=1) == "ns2"
    assert not blocked.done()
    gate.set()
    assert await blocked == "ns1"
    await bus.close()


@pytest.mark.asyncio
async def test_job_exception_is_delivered_and_worker_survives() -> None:
    bus = EventBus()

    async def _fail() -> None:
        raise ValueError("apply failed")

    async def _ok() -> str:
        return "ok"

    failed = bus.submit("Podman", _fail)
    ok = bus.submit("Podman", _ok)

    with pytest.raises(ValueError, match="apply failed"):
        await failed
    assert await ok == "ok"
    await bus.close()


@pytest.mark.asyncio
async def test_closed_bus_rejects_jobs() -> None:
    bus = EventBus()
    await bus.close()

    async def _noop() -> None:
        return None

    with pytest.raises(RuntimeError, match="closed"):
        bus.submit("JDP", _noop)
