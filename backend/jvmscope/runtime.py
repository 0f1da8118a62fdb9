"""
Process-wide discovery runtime.

Owns every long-lived collaborator of the discovery engine and wires them
together explicitly: the event bus, the reconciliation driver, the enabled
backends, the plugin and custom-target services, and the downstream event
subscribers.  The FastAPI app creates one runtime at startup and stores it
on ``app.state``; tests build their own around an in-memory database.

Startup order:

1. Ensure the Universe node and the builtin realm of every enabled backend
   and of the custom-target realm.
2. Prune external plugins whose callbacks no longer answer.
3. Start every backend whose environment precondition holds.  Unavailable
   backends are logged once and left idle.
"""

from __future__ import annotations

from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import Session

from jvmscope.config import Settings, get_settings
from jvmscope.core.connections import ConnectionProbe, SocketConnectionProbe
from jvmscope.core.events import EventBus, RedisNotifier, TargetDiscoveryEvent
from jvmscope.core.logging import get_logger
from jvmscope.core.security import DiscoveryTokenFactory
from jvmscope.discovery import (
    CUSTOM_REALM,
    BackendRegistry,
    CustomTargetService,
    DiscoveryBackend,
    PluginService,
)
from jvmscope.engine.driver import ReconciliationDriver
from jvmscope.engine.jvm_id import JvmIdUpdater
from jvmscope.engine.topology import Topology, apply_in_transaction, scope_key

logger = get_logger(__name__)


class DiscoveryRuntime:
    """Explicitly constructed discovery engine for one process.

    Args:
        session_factory: Database session factory.
        settings: Application settings.
        backends: Backends to run.  Defaults to every enabled registered
            backend.
        probe: Connection collaborator.  Defaults to a TCP probe.
        tokens: Plugin token factory.
        notifier: Optional extra subscriber, typically a
            :class:`~jvmscope.core.events.RedisNotifier`.
        plugin_transport: Optional httpx transport for plugin callback pings.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Optional[Settings] = None,
        backends: Optional[list[DiscoveryBackend]] = None,
        probe: Optional[ConnectionProbe] = None,
        tokens: Optional[DiscoveryTokenFactory] = None,
        notifier: Optional[RedisNotifier] = None,
        plugin_transport: Any = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.session_factory = session_factory
        self.bus = EventBus()
        self.driver = ReconciliationDriver(session_factory, self.bus)
        self.probe: ConnectionProbe = probe or SocketConnectionProbe(
            timeout=self.settings.CUSTOM_TARGETS_CONNECTION_TIMEOUT_SECONDS
        )
        self.tokens = tokens or DiscoveryTokenFactory(self.settings)
        self.plugins = PluginService(
            session_factory,
            self.bus,
            self.tokens,
            settings=self.settings,
            transport=plugin_transport,
        )
        self.custom_targets = CustomTargetService(
            session_factory,
            self.bus,
            self.probe,
            settings=self.settings,
        )
        self.jvm_ids = JvmIdUpdater(
            session_factory, self.bus, self.probe, scope_of=self.scope_of_target
        )
        self.bus.subscribe(self.jvm_ids)
        self.notifier = notifier
        if notifier is not None:
            self.bus.subscribe(notifier)

        self.backends: list[DiscoveryBackend] = (
            backends if backends is not None else BackendRegistry.get_enabled(self.settings)
        )
        self.active: list[DiscoveryBackend] = []

    # -- Lifecycle -------------------------------------------------------------

    async def start(self) -> None:
        for backend in self.backends:
            await self.plugins.ensure_builtin(backend.realm)
        await self.plugins.ensure_builtin(CUSTOM_REALM)

        pruned = await self.plugins.prune()
        if pruned:
            logger.info(
                "Pruned %d unreachable plugins at startup",
                len(pruned),
                extra={"action": "plugins_pruned", "target": "startup"},
            )

        for backend in self.backends:
            if not backend.available():
                logger.warning(
                    "Discovery backend environment unavailable, staying idle",
                    extra={"action": "backend_unavailable", "target": backend.realm},
                )
                continue
            backend.bind(self.driver)
            await backend.start()
            self.active.append(backend)

    async def stop(self) -> None:
        for backend in self.active:
            await backend.stop()
        self.active.clear()
        await self.driver.close()
        await self.jvm_ids.close()
        await self.bus.close()
        if self.notifier is not None:
            await self.notifier.close()

    # -- Scopes ----------------------------------------------------------------

    def scope_of_target(self, event: TargetDiscoveryEvent) -> str:
        """Return the key of the reconciliation scope owning the target of *event*."""
        realm = event.realm or ""
        cryostat = event.annotations.get("cryostat", {})
        for backend in self.backends:
            if backend.realm == realm:
                return backend.target_scope_key(cryostat)
        return scope_key(realm)

    # -- Queries ---------------------------------------------------------------

    async def topology(self) -> dict[str, Any]:
        """Return the whole tree, nested from the Universe."""

        def _read(session: Session) -> dict[str, Any]:
            return Topology(session).get_universe().to_dict()

        return await apply_in_transaction(self.session_factory, None, _read)
