"""
Generic reconciliation driver.

Every discovery backend funnels its work through
:meth:`ReconciliationDriver.request`.  A request is queued on the event bus
under the backend's scope key, so for one scope the observe and apply stages
of successive requests never overlap, while scopes of other backends (or
other namespaces) proceed in parallel.  Requests arriving while an earlier
one for the same scope is still waiting are coalesced into it.

Failure handling:

- An observe failure (timeout, API error, malformed response) means the
  scope could not be observed this cycle.  It is logged as a warning and
  nothing is changed.  Absence is only ever concluded from a successful
  observation.
- An apply failure rolls back the whole scope transaction.  The scope is
  retried on the backend's next poll or resync, never immediately.

Targets a namespace pass had to defer (still attached under another
namespace of the realm) are handed off outside the scope worker: the owning
namespace is reconciled first, and when that pass released any of them the
deferring namespace is requested again.  A pass never waits on another
scope's worker from inside its own.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from jvmscope.core.events import EventBus
from jvmscope.core.logging import get_logger
from jvmscope.engine.reconcile import Reconciler, ReconcileResult
from jvmscope.engine.topology import apply_in_transaction

if TYPE_CHECKING:
    from jvmscope.discovery.base import DiscoveryBackend

logger = get_logger(__name__)

_COALESCE_KEY: str = "reconcile"


class ReconciliationDriver:
    """Runs observe-then-apply passes for discovery backends.

    Args:
        session_factory: Produces one session per apply stage.
        bus: Scope serialisation and event fan-out.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        bus: EventBus,
    ) -> None:
        self.session_factory = session_factory
        self.bus = bus
        self._handoffs: set[asyncio.Task[None]] = set()

    def request(
        self,
        backend: "DiscoveryBackend",
        scope: Optional[str] = None,
    ) -> asyncio.Future:
        """Queue a reconciliation of *scope* for *backend*.

        Returns:
            A future resolving to the :class:`ReconcileResult`, or ``None``
            when the pass was skipped or failed.
        """
        return self.bus.submit(
            backend.scope_key(scope),
            lambda: self.reconcile(backend, scope),
            coalesce_key=_COALESCE_KEY,
        )

    async def reconcile(
        self,
        backend: "DiscoveryBackend",
        scope: Optional[str] = None,
    ) -> Optional[ReconcileResult]:
        """Observe *scope* and apply the result.  Never raises."""
        key = backend.scope_key(scope)

        # ── Observe ────────────────────────────────────────────────────
        try:
            observations = await backend.list_observations(scope)
        except Exception as exc:
            logger.warning(
                "Could not observe scope, retrying next cycle: %s",
                exc,
                extra={"action": "observe_failed", "target": key},
            )
            return None

        if observations is None:
            return None

        # ── Apply ──────────────────────────────────────────────────────
        namespace = backend.namespace_for(scope)
        namespace_labels = backend.namespace_labels(namespace) if namespace else None
        try:
            result = await apply_in_transaction(
                self.session_factory,
                self.bus,
                lambda session: Reconciler(session).apply(
                    backend.realm,
                    observations,
                    namespace=namespace,
                    namespace_labels=namespace_labels,
                ),
            )
        except Exception:
            logger.exception(
                "Reconciliation failed, retrying next cycle",
                extra={"action": "apply_failed", "target": key},
            )
            return None

        if result.deferred:
            task = asyncio.create_task(self.hand_off(backend, scope, result.deferred))
            self._handoffs.add(task)
            task.add_done_callback(self._handoffs.discard)
        return result

    async def hand_off(
        self,
        backend: "DiscoveryBackend",
        scope: Optional[str],
        deferred: dict[str, str],
    ) -> bool:
        """Reconcile the namespaces holding *deferred* targets, then *scope* again.

        Must run outside the scope workers.

        Returns:
            ``True`` when *scope* was requested again.
        """
        key = backend.scope_key(scope)
        released = False
        for namespace in sorted(set(deferred.values())):
            owner = backend.scope_for_namespace(namespace)
            if backend.scope_key(owner) == key:
                continue
            owner_result = await self.request(backend, owner)
            if owner_result is None:
                continue
            held = [url for url, holder in deferred.items() if holder == namespace]
            if any(url in owner_result.lost for url in held):
                released = True

        if not released:
            logger.warning(
                "Deferred targets are still attached elsewhere: %s",
                ", ".join(sorted(deferred)),
                extra={"action": "handoff_pending", "target": key},
            )
            return False
        self.request(backend, scope)
        return True

    async def close(self) -> None:
        tasks = list(self._handoffs)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
