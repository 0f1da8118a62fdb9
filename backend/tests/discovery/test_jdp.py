"""
Tests for the JDP multicast backend.

Packets are encoded in the test and fed straight into ``handle_packet``;
heartbeat expiry runs against a controllable clock.
"""

from __future__ import annotations

import struct
from typing import Optional

import pytest

from jvmscope.core.urls import create_service_url
from jvmscope.discovery.jdp import JDP_MAGIC, JdpDiscovery, JdpPacketError, parse_packet

URL = create_service_url("10.0.0.5", 9091)


def _packet(entries: dict[str, str], magic: int = JDP_MAGIC, version: int = 1) -> bytes:
    data = struct.pack(">IH", magic, version)
    for key, value in entries.items():
        for part in (key, value):
            encoded = part.encode("utf-8")
            data += struct.pack(">H", len(encoded)) + encoded
    return data


def _announcement(session: str = "s1", url: str = URL, interval_ms: str = "1000") -> bytes:
    return _packet(
        {
            "JMX_SERVICE_URL": url,
            "MAIN_CLASS": "com.example.Main",
            "DISCOVERABLE_SESSION_UUID": session,
            "BROADCAST_INTERVAL": interval_ms,
        }
    )


class _Driver:
    """Records reconcile requests instead of running them."""

    def __init__(self) -> None:
        self.requests: list[Optional[str]] = []

    def request(self, backend, scope=None):
        self.requests.append(scope)
        return None


class _Clock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture()
def clock() -> _Clock:
    return _Clock()


@pytest.fixture()
def driver() -> _Driver:
    return _Driver()


@pytest.fixture()
def jdp(settings, clock, driver) -> JdpDiscovery:
    backend = JdpDiscovery(settings, clock=clock)
    backend.bind(driver)
    return backend


# ---------------------------------------------------------------------------
# Packet codec
# ---------------------------------------------------------------------------


def test_packet_entries_are_decoded() -> None:
    assert parse_packet(_packet({"A": "1", "B": "zwei"})) == {"A": "1", "B": "zwei"}


@pytest.mark.parametrize(
    "data",
    [
        b"\x00",
        _packet({"A": "1"}, magic=0xDEADBEEF),
        _packet({"A": "1"}, version=2),
        _packet({"A": "1"})[:-1],
    ],
    ids=["short", "magic", "version", "truncated"],
)
def test_malformed_packets_are_rejected(data: bytes) -> None:
    with pytest.raises(JdpPacketError):
        parse_packet(data)


# ---------------------------------------------------------------------------
# Live set
# ---------------------------------------------------------------------------


def test_new_jvm_triggers_one_reconcile(jdp: JdpDiscovery, driver: _Driver) -> None:
    assert jdp.handle_packet(_announcement()) is not None
    assert jdp.handle_packet(_announcement()) is None

    assert driver.requests == [None]


def test_restarted_jvm_is_announced_again(jdp: JdpDiscovery, driver: _Driver) -> None:
    jdp.handle_packet(_announcement(session="s1"))
    jdp.handle_packet(_announcement(session="s2"))

    assert len(driver.requests) == 2


def test_invalid_packets_are_ignored(jdp: JdpDiscovery, driver: _Driver) -> None:
    assert jdp.handle_packet(b"garbage") is None
    assert jdp.handle_packet(_packet({"MAIN_CLASS": "NoUrl"})) is None
    assert driver.requests == []


def test_jvm_expires_after_missed_heartbeats(jdp: JdpDiscovery, driver: _Driver, clock: _Clock) -> None:
    jdp.handle_packet(_announcement(interval_ms="1000"))

    clock.now += 2.9
    assert jdp.expire() == []
    clock.now += 0.2
    expired = jdp.expire()

    assert [jvm.connect_url for jvm in expired] == [URL]
    assert jdp.announcements == []
    assert driver.requests == [None, None]


def test_heartbeats_keep_the_jvm_alive(jdp: JdpDiscovery, clock: _Clock) -> None:
    jdp.handle_packet(_announcement())
    for _ in range(5):
        clock.now += 2.0
        jdp.handle_packet(_announcement())

    assert jdp.expire() == []


# ---------------------------------------------------------------------------
# Observation
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_announced_jvms_are_observed(jdp: JdpDiscovery) -> None:
    jdp.handle_packet(_announcement())

    observations = await jdp.list_observations()

    assert len(observations) == 1
    target = observations[0].target
    assert target.alias == "com.example.Main"
    assert target.cryostat_annotations == {
        "REALM": "JDP",
        "JAVA_MAIN": "com.example.Main",
        "HOST": "10.0.0.5",
        "PORT": "9091",
    }
    assert observations[0].chain[:-1] == []
