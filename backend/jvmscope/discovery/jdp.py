"""
Java Discovery Protocol (JDP) backend.

JVMs started with ``-Dcom.sun.management.jmxremote.autodiscovery=true``
periodically multicast a small announcement packet.  This backend joins the
multicast group, keeps a live set of announced JVMs, and reconciles the JDP
realm whenever a JVM appears or misses too many heartbeats.

Packet layout (big endian)::

    uint32  magic            0xC0FFEE42
    uint16  protocol version 1
    repeated:
        uint16 key length,   UTF-8 key
        uint16 value length, UTF-8 value
"""

from __future__ import annotations

import asyncio
import socket
import struct
import time
from dataclasses import dataclass
from typing import Optional

from jvmscope.core.logging import get_logger
from jvmscope.core.urls import get_rmi_target, host_and_port
from jvmscope.discovery.base import DiscoveryBackend
from jvmscope.discovery.registry import BackendRegistry
from jvmscope.engine.observations import Observation, TargetSpec
from jvmscope.models.node import NodeType
from jvmscope.models.target import (
    HOST_ANNOTATION,
    JAVA_MAIN_ANNOTATION,
    PORT_ANNOTATION,
    REALM_ANNOTATION,
)

logger = get_logger(__name__)

# ── Constants ────────────────────────────────────────────────────────────────

JDP_MAGIC: int = 0xC0FFEE42
JDP_PROTOCOL_VERSION: int = 1

SESSION_UUID_KEY: str = "DISCOVERABLE_SESSION_UUID"
MAIN_CLASS_KEY: str = "MAIN_CLASS"
JMX_SERVICE_URL_KEY: str = "JMX_SERVICE_URL"
INSTANCE_NAME_KEY: str = "INSTANCE_NAME"
PROCESS_ID_KEY: str = "PROCESS_ID"
BROADCAST_INTERVAL_KEY: str = "BROADCAST_INTERVAL"

DEFAULT_BROADCAST_INTERVAL_MS: int = 5000
_HEADER: struct.Struct = struct.Struct(">IH")
_LENGTH: struct.Struct = struct.Struct(">H")
_EXPIRY_CHECK_SECONDS: float = 1.0


class JdpPacketError(ValueError):
    """An announcement packet could not be decoded."""


# ── Packet codec ─────────────────────────────────────────────────────────────

def parse_packet(data: bytes) -> dict[str, str]:
    """Decode a JDP announcement into its key/value entries.

    Raises:
        JdpPacketError: On a bad magic number, unknown version, or truncated
            entry.
    """
    if len(data) < _HEADER.size:
        raise JdpPacketError("Packet is shorter than the JDP header.")
    magic, version = _HEADER.unpack_from(data, 0)
    if magic != JDP_MAGIC:
        raise JdpPacketError(f"Bad JDP magic {magic:#x}.")
    if version != JDP_PROTOCOL_VERSION:
        raise JdpPacketError(f"Unsupported JDP protocol version {version}.")

    entries: dict[str, str] = {}
    offset = _HEADER.size
    while offset < len(data):
        key, offset = _read_string(data, offset)
        value, offset = _read_string(data, offset)
        entries[key] = value
    return entries


def _read_string(data: bytes, offset: int) -> tuple[str, int]:
    if offset + _LENGTH.size > len(data):
        raise JdpPacketError("Truncated JDP entry length.")
    (length,) = _LENGTH.unpack_from(data, offset)
    offset += _LENGTH.size
    end = offset + length
    if end > len(data):
        raise JdpPacketError("Truncated JDP entry.")
    try:
        return data[offset:end].decode("utf-8"), end
    except UnicodeDecodeError as exc:
        raise JdpPacketError("JDP entry is not valid UTF-8.") from exc


# ── Announcement state ───────────────────────────────────────────────────────

@dataclass
class JvmAnnouncement:
    """The latest announcement of one JVM."""

    connect_url: str
    main_class: str
    session_uuid: Optional[str]
    interval_seconds: float
    last_seen: float

    @classmethod
    def from_entries(cls, entries: dict[str, str], now: float) -> "JvmAnnouncement":
        connect_url = entries.get(JMX_SERVICE_URL_KEY)
        if not connect_url:
            raise JdpPacketError("Announcement has no JMX service URL.")
        try:
            interval_ms = int(entries.get(BROADCAST_INTERVAL_KEY, DEFAULT_BROADCAST_INTERVAL_MS))
        except ValueError:
            interval_ms = DEFAULT_BROADCAST_INTERVAL_MS
        main_class = entries.get(MAIN_CLASS_KEY) or entries.get(INSTANCE_NAME_KEY) or connect_url
        return cls(
            connect_url=connect_url,
            main_class=main_class,
            session_uuid=entries.get(SESSION_UUID_KEY),
            interval_seconds=max(interval_ms, 1) / 1000.0,
            last_seen=now,
        )


class _JdpProtocol(asyncio.DatagramProtocol):
    def __init__(self, backend: "JdpDiscovery") -> None:
        self._backend = backend

    def datagram_received(self, data: bytes, addr) -> None:
        self._backend.handle_packet(data, addr)

    def error_received(self, exc: Exception) -> None:
        logger.warning(
            "JDP socket error: %s",
            exc,
            extra={"action": "jdp_socket_error", "target": JdpDiscovery.realm},
        )


# ── Backend ──────────────────────────────────────────────────────────────────

@BackendRegistry.register
class JdpDiscovery(DiscoveryBackend):
    """JVMs announcing themselves over JDP multicast."""

    name: str = "jdp"
    realm: str = "JDP"
    description: str = "JVMs broadcasting Java Discovery Protocol announcements"

    def __init__(self, settings=None, clock=time.monotonic) -> None:
        super().__init__(settings)
        self._clock = clock
        self._jvms: dict[str, JvmAnnouncement] = {}
        self._transport: Optional[asyncio.DatagramTransport] = None

    def enabled(self) -> bool:
        return self.settings.JDP_ENABLED

    # -- Live set --------------------------------------------------------------

    def handle_packet(self, data: bytes, addr=None) -> Optional[JvmAnnouncement]:
        """Record one received packet.  Returns the announcement when it is new."""
        try:
            announcement = JvmAnnouncement.from_entries(parse_packet(data), self._clock())
        except JdpPacketError as exc:
            logger.debug(
                "Ignoring JDP packet: %s",
                exc,
                extra={"action": "jdp_packet_invalid", "target": str(addr)},
            )
            return None

        known = self._jvms.get(announcement.connect_url)
        self._jvms[announcement.connect_url] = announcement
        if known is not None and known.session_uuid == announcement.session_uuid:
            return None

        logger.info(
            "JDP announcement from %s",
            announcement.main_class,
            extra={"action": "jdp_found", "target": announcement.connect_url},
        )
        self.request_reconcile()
        return announcement

    def expire(self) -> list[JvmAnnouncement]:
        """Drop JVMs that missed too many heartbeats.  Returns the dropped ones."""
        now = self._clock()
        missed = self.settings.JDP_MISSED_HEARTBEATS
        expired = [
            jvm
            for jvm in self._jvms.values()
            if now - jvm.last_seen > missed * jvm.interval_seconds
        ]
        for jvm in expired:
            del self._jvms[jvm.connect_url]
            logger.info(
                "JDP announcements stopped",
                extra={"action": "jdp_lost", "target": jvm.connect_url},
            )
        if expired:
            self.request_reconcile()
        return expired

    @property
    def announcements(self) -> list[JvmAnnouncement]:
        return list(self._jvms.values())

    # -- Observation -----------------------------------------------------------

    async def list_observations(self, scope: Optional[str] = None) -> list[Observation]:
        observations: list[Observation] = []
        for jvm in self.announcements:
            observation = self.observation_for(jvm)
            if observation is not None:
                observations.append(observation)
        return observations

    def observation_for(self, jvm: JvmAnnouncement) -> Optional[Observation]:
        try:
            try:
                host, port = get_rmi_target(jvm.connect_url)
            except ValueError:
                host, port = host_and_port(jvm.connect_url)
        except ValueError:
            logger.warning(
                "Invalid JDP target observed",
                extra={"action": "jdp_target_invalid", "target": jvm.connect_url},
            )
            return None
        target = TargetSpec(
            connect_url=jvm.connect_url,
            alias=jvm.main_class,
            cryostat_annotations={
                REALM_ANNOTATION: self.realm,
                JAVA_MAIN_ANNOTATION: jvm.main_class,
                HOST_ANNOTATION: host,
                PORT_ANNOTATION: str(port),
            },
        )
        return Observation.direct(target, NodeType.JVM)

    # -- Lifecycle -------------------------------------------------------------

    def _open_socket(self) -> socket.socket:
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM, socket.IPPROTO_UDP)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind(("", self.settings.JDP_PORT))
        membership = struct.pack(
            "4s4s",
            socket.inet_aton(self.settings.JDP_ADDRESS),
            socket.inet_aton("0.0.0.0"),
        )
        sock.setsockopt(socket.IPPROTO_IP, socket.IP_ADD_MEMBERSHIP, membership)
        sock.setblocking(False)
        return sock

    async def start(self) -> None:
        loop = asyncio.get_running_loop()
        try:
            sock = self._open_socket()
        except OSError as exc:
            logger.warning(
                "Cannot join JDP multicast group: %s",
                exc,
                extra={"action": "backend_unavailable", "target": self.realm},
            )
            return
        self._transport, _ = await loop.create_datagram_endpoint(
            lambda: _JdpProtocol(self),
            sock=sock,
        )
        self.spawn(self._expiry_loop(), "expiry")
        self.spawn(self.resync(), "initial-sync")
        logger.info(
            "Listening for JDP on %s:%d",
            self.settings.JDP_ADDRESS,
            self.settings.JDP_PORT,
            extra={"action": "backend_started", "target": self.realm},
        )

    async def _expiry_loop(self) -> None:
        while True:
            await asyncio.sleep(_EXPIRY_CHECK_SECONDS)
            self.expire()

    async def stop(self) -> None:
        if self._transport is not None:
            self._transport.close()
            self._transport = None
        await super().stop()
