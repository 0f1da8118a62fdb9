"""
Topology tree operations.

:class:`Topology` wraps a *synchronous* SQLAlchemy ``Session`` and exposes
the primitive tree mutations every other component is built from.  Async
callers reach it through :func:`apply_in_transaction`, which runs the
mutation inside ``AsyncSession.run_sync`` so relationship collections can be
lazy-loaded freely, commits once, and only then publishes the discovery
events the mutation recorded.

Events are recorded explicitly at the point of mutation
(:meth:`Topology.attach_target` records FOUND, :meth:`Topology.detach_target`
records LOST) and collected on ``session.info`` until the commit succeeds.
A rolled back transaction therefore never publishes anything.

Every mutation of a realm's subtree runs on the ordered worker of its
reconciliation scope.  :func:`apply_in_scope` submits a transaction there and
waits for it, so plugin publishes, custom target edits and JVM id updates
never interleave with a reconciliation pass over the same subtree.
"""

from __future__ import annotations

from typing import Callable, Optional, TypeVar, Union

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import Session

from jvmscope.core.events import EventBus, EventKind, TargetDiscoveryEvent
from jvmscope.core.exceptions import TopologyConflictError
from jvmscope.core.logging import get_logger
from jvmscope.core.urls import host_and_port
from jvmscope.engine.observations import TargetSpec, kind_of
from jvmscope.models.node import DiscoveryNode, NodeType
from jvmscope.models.target import REALM_ANNOTATION, Target

logger = get_logger(__name__)

T = TypeVar("T")

# ── Constants ────────────────────────────────────────────────────────────────

UNIVERSE_NAME: str = "Universe"
_EVENTS_KEY: str = "discovery_events"


# ── Scopes ───────────────────────────────────────────────────────────────────

def scope_key(realm: str, namespace: Optional[str] = None) -> str:
    return realm if namespace is None else f"{realm}/{namespace}"


# ── Event recording ──────────────────────────────────────────────────────────

def record_event(session: Session, kind: EventKind, target: Target) -> None:
    """Queue a discovery event to be published once *session* commits."""
    session.info.setdefault(_EVENTS_KEY, []).append((kind, target))


def drain_events(session: Session) -> list[TargetDiscoveryEvent]:
    """Flush *session* and turn its recorded events into snapshots."""
    session.flush()
    pending: list[tuple[EventKind, Target]] = session.info.pop(_EVENTS_KEY, [])
    return [TargetDiscoveryEvent.from_target(kind, target) for kind, target in pending]


async def apply_in_transaction(
    session_factory: async_sessionmaker[AsyncSession],
    bus: Optional[EventBus],
    fn: Callable[[Session], T],
) -> T:
    """Run the synchronous tree mutation *fn* in one transaction.

    Args:
        session_factory: Factory producing the transaction's session.
        bus: Receives the recorded events after a successful commit.  May be
            ``None`` to discard them.
        fn: Callable taking the synchronous ``Session``.

    Returns:
        Whatever *fn* returned.

    Raises:
        TopologyConflictError: When the commit violates a uniqueness
            constraint, e.g. two realms attaching the same connect URL.
        Exception: Anything raised by *fn* or by the commit, after the
            transaction has been rolled back.
    """
    async with session_factory() as session:
        try:
            result = await session.run_sync(fn)
            events = await session.run_sync(drain_events)
            await session.commit()
        except IntegrityError as exc:
            session.info.pop(_EVENTS_KEY, None)
            await session.rollback()
            raise TopologyConflictError(f"Conflicting topology write: {exc.orig}") from exc
        except Exception:
            session.info.pop(_EVENTS_KEY, None)
            await session.rollback()
            raise

    if bus is not None and events:
        await bus.publish(events)
    return result


async def apply_in_scope(
    session_factory: async_sessionmaker[AsyncSession],
    bus: Optional[EventBus],
    scope: str,
    fn: Callable[[Session], T],
) -> T:
    """Run :func:`apply_in_transaction` on the worker of *scope* and wait for it.

    Must not be awaited from a job already running on *scope*.  Without a
    bus the transaction runs inline.
    """
    if bus is None:
        return await apply_in_transaction(session_factory, None, fn)
    return await bus.submit(scope, lambda: apply_in_transaction(session_factory, bus, fn))


# ── Tree operations ──────────────────────────────────────────────────────────

class Topology:
    """Primitive operations on the persisted discovery tree.

    Args:
        session: The synchronous session of the current transaction.
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    # -- Lookups ---------------------------------------------------------------

    def get_universe(self) -> DiscoveryNode:
        """Return the root node, creating it on first access."""
        stmt = (
            select(DiscoveryNode)
            .where(
                DiscoveryNode.node_type == NodeType.UNIVERSE.value,
                DiscoveryNode.parent_id.is_(None),
            )
            .order_by(DiscoveryNode.id)
        )
        universe = self.session.scalars(stmt).first()
        if universe is None:
            universe = DiscoveryNode(
                name=UNIVERSE_NAME,
                node_type=NodeType.UNIVERSE.value,
                labels={},
                leaf=False,
            )
            self.session.add(universe)
            self.session.flush()
            logger.info(
                "Created topology root",
                extra={"action": "universe_created", "target": UNIVERSE_NAME},
            )
        return universe

    def get_realm(self, name: str) -> Optional[DiscoveryNode]:
        return self.get_child(
            self.get_universe(),
            lambda node: node.name == name and node.node_type == NodeType.REALM.value,
        )

    def ensure_realm(self, name: str) -> DiscoveryNode:
        realm = self.get_realm(name)
        if realm is None:
            realm = self.attach_environment(self.get_universe(), name, NodeType.REALM)
            logger.info(
                "Created realm",
                extra={"action": "realm_created", "target": name},
            )
        return realm

    @staticmethod
    def get_child(
        node: DiscoveryNode,
        predicate: Callable[[DiscoveryNode], bool],
    ) -> Optional[DiscoveryNode]:
        if node.leaf:
            return None
        for child in node.children:
            if predicate(child):
                return child
        return None

    def find_target(self, connect_url: str) -> Optional[Target]:
        stmt = select(Target).where(Target.connect_url == connect_url)
        return self.session.scalars(stmt).first()

    def find_target_by_alias(self, alias: str) -> Optional[Target]:
        stmt = select(Target).where(Target.alias == alias).order_by(Target.id)
        return self.session.scalars(stmt).first()

    def all_targets(self) -> list[Target]:
        return list(self.session.scalars(select(Target).order_by(Target.id)))

    def unique_alias(
        self,
        alias: str,
        connect_url: str,
        exclude: Optional[Target] = None,
    ) -> str:
        """Return *alias*, or a suffixed variant when another target holds it.

        Candidates are tried in order: *alias*, ``alias:<port>`` with the port
        of *connect_url*, then that with ``-2``, ``-3``...  *exclude* (the
        target being renamed) never counts as a holder.
        """
        # Aliases assigned earlier in this transaction must be visible.
        self.session.flush()
        candidates = [alias]
        try:
            _, port = host_and_port(connect_url)
        except ValueError:
            pass
        else:
            candidates.append(f"{alias}:{port}")
        for candidate in candidates:
            if self._alias_free(candidate, exclude):
                return candidate
        base = candidates[-1]
        counter = 2
        while not self._alias_free(f"{base}-{counter}", exclude):
            counter += 1
        return f"{base}-{counter}"

    def _alias_free(self, alias: str, exclude: Optional[Target]) -> bool:
        holder = self.find_target_by_alias(alias)
        return holder is None or holder is exclude

    @staticmethod
    def realm_of(node: Optional[DiscoveryNode]) -> Optional[DiscoveryNode]:
        """Walk up from *node* to its enclosing Realm node."""
        while node is not None:
            if node.node_type == NodeType.REALM.value:
                return node
            node = node.parent
        return None

    # -- Mutations -------------------------------------------------------------

    def attach_environment(
        self,
        parent: DiscoveryNode,
        name: str,
        node_type: Union[NodeType, str],
        labels: Optional[dict[str, str]] = None,
    ) -> DiscoveryNode:
        """Return the non-leaf child of *parent* named *name*, creating it if needed.

        When the child already exists its labels are replaced by *labels*
        (if given).
        """
        kind = kind_of(node_type)
        existing = self.get_child(
            parent,
            lambda node: node.name == name and node.node_type == kind and not node.leaf,
        )
        if existing is not None:
            if labels is not None and existing.labels != labels:
                existing.labels = dict(labels)
            return existing

        node = DiscoveryNode(
            name=name,
            node_type=kind,
            labels=dict(labels or {}),
            leaf=False,
        )
        parent.add_child(node)
        self.session.add(node)
        return node

    def attach_target(
        self,
        parent: DiscoveryNode,
        spec: TargetSpec,
        node_type: Union[NodeType, str] = NodeType.JVM,
        emit: bool = True,
    ) -> Target:
        """Create a target and the leaf node wrapping it under *parent*.

        The stored alias is made unique with :meth:`unique_alias`.
        """
        realm = self.realm_of(parent)
        cryostat = dict(spec.cryostat_annotations)
        if realm is not None:
            cryostat.setdefault(REALM_ANNOTATION, realm.name)

        target = Target(
            connect_url=spec.connect_url,
            alias=self.unique_alias(spec.alias, spec.connect_url),
            jvm_id=spec.jvm_id,
            labels=dict(spec.labels),
            annotations={
                "platform": dict(spec.platform_annotations),
                "cryostat": cryostat,
            },
        )
        node = DiscoveryNode(
            name=spec.connect_url,
            node_type=kind_of(node_type),
            labels=dict(spec.labels),
            leaf=True,
        )
        node.target = target
        parent.add_child(node)
        self.session.add(node)
        if emit:
            record_event(self.session, EventKind.FOUND, target)
        return target

    def update_target(self, target: Target, spec: TargetSpec, emit: bool = True) -> bool:
        """Copy the mutable attributes of *spec* onto *target*.

        The realm annotation assigned at creation is preserved.  ``jvm_id``
        is only overwritten when the observation carries one.  A suffix
        given to a colliding alias is kept while the collision lasts.

        Returns:
            ``True`` when anything changed.  A MODIFIED event is recorded
            unless *emit* is false.
        """
        annotations = spec.annotations()
        realm = target.realm
        if realm is not None:
            annotations["cryostat"].setdefault(REALM_ANNOTATION, realm)

        changed = False
        alias = spec.alias
        if target.alias != alias:
            alias = self.unique_alias(alias, target.connect_url, exclude=target)
        if target.alias != alias:
            target.alias = alias
            changed = True
        if (target.labels or {}) != spec.labels:
            target.labels = dict(spec.labels)
            changed = True
        if (target.annotations or {}) != annotations:
            target.annotations = annotations
            changed = True
        if spec.jvm_id and target.jvm_id != spec.jvm_id:
            target.jvm_id = spec.jvm_id
            changed = True

        node = target.discovery_node
        if node is not None and (node.labels or {}) != spec.labels:
            node.labels = dict(spec.labels)

        if changed and emit:
            record_event(self.session, EventKind.MODIFIED, target)
        return changed

    def detach_target(self, target: Target, emit: bool = True) -> None:
        """Delete *target* and its leaf node, then prune emptied ancestors."""
        if emit:
            record_event(self.session, EventKind.LOST, target)
        node = target.discovery_node
        if node is None or node.parent is None:
            self.session.delete(target)
            if node is not None:
                self.session.delete(node)
            return
        parent = node.parent
        parent.children.remove(node)
        self.prune(parent)

    def relocate_target(
        self,
        target: Target,
        new_parent: DiscoveryNode,
        emit: bool = True,
    ) -> bool:
        """Move the leaf node of *target* under *new_parent*, pruning the old chain.

        Returns:
            ``True`` when the node moved.  A MODIFIED event is recorded
            unless *emit* is false.
        """
        node = target.discovery_node
        old_parent = node.parent if node is not None else None
        if node is None or old_parent is new_parent:
            return False
        new_parent.add_child(node)
        if old_parent is not None and node in old_parent.children:
            old_parent.children.remove(node)
            node.parent = new_parent
        if old_parent is not None:
            self.prune(old_parent)
        if emit:
            record_event(self.session, EventKind.MODIFIED, target)
        return True

    def prune(self, node: Optional[DiscoveryNode]) -> None:
        """Remove *node* and its ancestors while they are childless non-structural nodes."""
        while node is not None and not node.is_structural and not node.children:
            parent = node.parent
            if parent is None:
                break
            parent.children.remove(node)
            node = parent

    def clear_children(self, node: DiscoveryNode, emit: bool = True) -> list[Target]:
        """Delete every child subtree of *node*.

        Returns:
            The targets that were removed.
        """
        removed = [
            target
            for child in node.children
            for target in child.subtree_targets()
        ]
        if emit:
            for target in removed:
                record_event(self.session, EventKind.LOST, target)
        node.children.clear()
        return removed


def chain_keys(node: DiscoveryNode, stop: DiscoveryNode) -> list[tuple[str, str]]:
    """Return ``(name, kind)`` keys of the ancestors of *node* below *stop*, top first."""
    keys: list[tuple[str, str]] = []
    current = node.parent
    while current is not None and current is not stop:
        keys.append((current.name, current.node_type))
        current = current.parent
    keys.reverse()
    return keys

