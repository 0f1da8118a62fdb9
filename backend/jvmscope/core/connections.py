"""
Connection collaborator used to validate targets and resolve JVM identifiers.

Opening a real management connection to a JVM is outside the discovery
engine.  The engine only needs two capabilities from that layer, expressed
as the :class:`ConnectionProbe` protocol:

- ``check`` -- is the target reachable at all?
- ``jvm_id`` -- best-effort retrieval of the target's JVM identifier.

:class:`SocketConnectionProbe` is the default implementation: a TCP connect
check against the host and port encoded in the connect URL.  A TCP handshake
cannot reveal a JVM identifier, so ``jvm_id`` is delegated to an optional
:data:`JvmIdResolver` coroutine (for instance one reading the runtime MXBean
over JMX).  Without a resolver it returns ``None`` and targets keep an empty
``jvm_id``.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Optional, Protocol

from jvmscope.core.logging import get_logger
from jvmscope.core.urls import host_and_port

logger = get_logger(__name__)

# (connect_url, username, password) -> JVM id or None
JvmIdResolver = Callable[[str, Optional[str], Optional[str]], Awaitable[Optional[str]]]


class ConnectionProbe(Protocol):
    """Capability interface of the excluded connection layer."""

    async def check(
        self,
        connect_url: str,
        username: Optional[str] = None,
        password: Optional[str] = None,
    ) -> bool:
        ...

    async def jvm_id(
        self,
        connect_url: str,
        username: Optional[str] = None,
        password: Optional[str] = None,
    ) -> Optional[str]:
        ...


class SocketConnectionProbe:
    """TCP reachability probe.

    Args:
        timeout: Seconds to wait for the TCP handshake.
        jvm_id_resolver: Answers :meth:`jvm_id`.  ``None`` resolves nothing.
    """

    def __init__(
        self,
        timeout: float = 5.0,
        jvm_id_resolver: Optional[JvmIdResolver] = None,
    ) -> None:
        self._timeout = timeout
        self._jvm_id_resolver = jvm_id_resolver

    async def check(
        self,
        connect_url: str,
        username: Optional[str] = None,
        password: Optional[str] = None,
    ) -> bool:
        try:
            host, port = host_and_port(connect_url)
        except ValueError:
            logger.debug(
                "Cannot derive host and port",
                extra={"action": "probe_skipped", "target": connect_url},
            )
            return False

        try:
            _, writer = await asyncio.wait_for(
                asyncio.open_connection(host, port),
                timeout=self._timeout,
            )
        except (OSError, asyncio.TimeoutError) as exc:
            logger.info(
                "Target unreachable: %s",
                exc,
                extra={"action": "probe_failed", "target": connect_url},
            )
            return False

        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass
        return True

    async def jvm_id(
        self,
        connect_url: str,
        username: Optional[str] = None,
        password: Optional[str] = None,
    ) -> Optional[str]:
        if self._jvm_id_resolver is None:
            return None
        return await self._jvm_id_resolver(connect_url, username, password)
