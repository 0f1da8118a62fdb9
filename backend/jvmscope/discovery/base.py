"""
Base interface for all JvmScope discovery backends.

A backend is a small capability object rather than a full discovery loop.
It answers four questions (is it *enabled*, is its environment *available*,
which *scopes* does it watch, and what does it *observe* in a scope) and
owns whatever background tasks trigger reconciliation (a poll timer, a
watch stream, a multicast socket).  Everything else (diffing, applying,
serialising per scope, publishing events) is done by the shared
:class:`~jvmscope.engine.driver.ReconciliationDriver`.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Optional

from jvmscope.config import Settings, get_settings
from jvmscope.core.logging import get_logger
from jvmscope.engine.observations import Observation
from jvmscope.engine.topology import scope_key

logger = get_logger(__name__)


class DiscoveryBackend(ABC):
    """Abstract base class every discovery backend implements.

    Subclasses **must** set ``name`` and ``realm`` and override
    :meth:`enabled` and :meth:`list_observations`.

    Attributes:
        name:        Short unique identifier used in the registry.
        realm:       Name of the Realm node the backend owns.
        description: Human-readable one-liner.
    """

    name: str = "base"
    realm: str = ""
    description: str = ""

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self.settings: Settings = settings or get_settings()
        self.driver: Any = None
        self._tasks: list[asyncio.Task[Any]] = []

    # -- Capability interface --------------------------------------------------

    @abstractmethod
    def enabled(self) -> bool:
        """Return ``True`` when configuration turns this backend on."""

    def available(self) -> bool:
        """Return ``True`` when the environment precondition is met."""
        return True

    def scopes(self) -> list[Optional[str]]:
        """Return the scopes this backend reconciles.  ``None`` is the whole realm."""
        return [None]

    def namespace_for(self, scope: Optional[str]) -> Optional[str]:
        """Return the Namespace node name for *scope*, or ``None`` for realm-wide scopes."""
        return None

    def namespace_labels(self, namespace: str) -> dict[str, str]:
        return {}

    def scope_for_namespace(self, namespace: Optional[str]) -> Optional[str]:
        """Inverse of :meth:`namespace_for`."""
        return None

    def scope_key(self, scope: Optional[str] = None) -> str:
        return scope_key(self.realm, self.namespace_for(scope))

    def target_scope_key(self, cryostat_annotations: dict[str, str]) -> str:
        """Return the key of the scope owning a target with these annotations."""
        return self.scope_key(None)

    @abstractmethod
    async def list_observations(self, scope: Optional[str] = None) -> Optional[list[Observation]]:
        """Observe *scope* and return its complete current target set.

        Must not touch the database.  Raising, or returning ``None``, means
        the scope could not be observed this cycle.
        """

    # -- Lifecycle -------------------------------------------------------------

    def bind(self, driver: Any) -> None:
        self.driver = driver

    async def start(self) -> None:
        """Start background work.  The default reconciles every scope once."""
        self.spawn(self.resync(), "initial-sync")

    async def stop(self) -> None:
        """Cancel every background task started through :meth:`spawn`."""
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info(
            "Discovery backend stopped",
            extra={"action": "backend_stopped", "target": self.realm},
        )

    # -- Helpers ---------------------------------------------------------------

    def request_reconcile(self, scope: Optional[str] = None) -> Optional[asyncio.Future]:
        if self.driver is None:
            return None
        return self.driver.request(self, scope)

    async def resync(self) -> None:
        """Reconcile every watched scope and wait for the passes to finish."""
        futures = [
            future
            for future in (self.request_reconcile(scope) for scope in self.scopes())
            if future is not None
        ]
        if futures:
            await asyncio.gather(*futures, return_exceptions=True)

    def spawn(self, coro: Awaitable[Any], name: str) -> asyncio.Task[Any]:
        task = asyncio.ensure_future(coro)
        task.set_name(f"{self.name}:{name}")
        self._tasks.append(task)
        return task

    async def every(
        self,
        period: float,
        fn: Callable[[], Awaitable[Any]],
        immediate: bool = False,
    ) -> None:
        """Call *fn* every *period* seconds until cancelled."""
        first = True
        while True:
            if not (immediate and first):
                await asyncio.sleep(period)
            first = False
            try:
                await fn()
            except Exception:
                logger.exception(
                    "Periodic discovery task failed",
                    extra={"action": "periodic_error", "target": self.realm},
                )

    def __repr__(self) -> str:
        return f"<{type(self).__name__} realm={self.realm!r}>"
