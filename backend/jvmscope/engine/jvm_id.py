"""
JVM identifier back-fill.

Subscribes to the event bus.  When a target is FOUND without a JVM
identifier, the connection collaborator is asked for one in the background.
A successful answer is stored on the worker of the target's reconciliation
scope and announced with a MODIFIED event.
"""

from __future__ import annotations

import asyncio
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import Session

from jvmscope.core.connections import ConnectionProbe
from jvmscope.core.events import EventBus, EventKind, TargetDiscoveryEvent
from jvmscope.core.logging import get_logger
from jvmscope.engine.topology import (
    Topology,
    apply_in_scope,
    apply_in_transaction,
    record_event,
    scope_key,
)

logger = get_logger(__name__)


def realm_scope(event: TargetDiscoveryEvent) -> str:
    return scope_key(event.realm or "")


class JvmIdUpdater:
    """Best-effort ``jvm_id`` resolution for newly found targets.

    Args:
        session_factory: Produces one session per store.
        bus: Scope serialisation and event fan-out.
        probe: Resolves JVM identifiers.
        scope_of: Maps a FOUND event to the scope key owning its target.
            Defaults to the realm-wide scope.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        bus: EventBus,
        probe: ConnectionProbe,
        scope_of: Callable[[TargetDiscoveryEvent], str] = realm_scope,
    ) -> None:
        self.session_factory = session_factory
        self.bus = bus
        self.probe = probe
        self.scope_of = scope_of
        self._tasks: set[asyncio.Task[Optional[str]]] = set()

    async def __call__(self, event: TargetDiscoveryEvent) -> None:
        if event.kind is not EventKind.FOUND or event.jvm_id:
            return
        task = asyncio.create_task(self.update(event.connect_url, self.scope_of(event)))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def update(self, connect_url: str, scope: Optional[str] = None) -> Optional[str]:
        """Resolve and store the JVM identifier of *connect_url*.

        The store runs on the worker of *scope*, inline when it is ``None``.
        Must not be awaited from a job of that scope.
        """
        try:
            jvm_id = await self.probe.jvm_id(connect_url)
        except Exception as exc:
            logger.info(
                "Could not resolve JVM id: %s",
                exc,
                extra={"action": "jvm_id_failed", "target": connect_url},
            )
            return None
        if not jvm_id:
            return None

        def _store(session: Session) -> bool:
            target = Topology(session).find_target(connect_url)
            if target is None or target.jvm_id == jvm_id:
                return False
            target.jvm_id = jvm_id
            record_event(session, EventKind.MODIFIED, target)
            return True

        try:
            if scope is None:
                await apply_in_transaction(self.session_factory, self.bus, _store)
            else:
                await apply_in_scope(self.session_factory, self.bus, scope, _store)
        except Exception:
            logger.exception(
                "Could not store JVM id",
                extra={"action": "jvm_id_store_failed", "target": connect_url},
            )
            return None
        return jvm_id

    async def close(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
