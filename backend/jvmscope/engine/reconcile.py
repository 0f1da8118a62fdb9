"""
Reconciliation apply stage.

Given the observations of one scope (a whole realm, or one namespace inside
a realm), :meth:`Reconciler.apply` makes the persisted subtree match them:

1. Load the persisted targets below the scope node.
2. Diff persisted against observed connect URLs (:func:`compute_delta`).
3. Detach every removed target, pruning ancestors that become empty.
   Namespace, Realm and Universe nodes are never pruned.
4. Update retained targets in place.  A retained target whose ownership
   chain changed is moved to the new chain.
5. Attach every added target, merging its chain top-down into existing
   nodes matched by name and kind.

Removals are flushed before any addition so a target that moved never exists
twice.  The caller owns the transaction: any exception leaves the whole
scope untouched after rollback.

A pass only ever writes below its own scope node.  An added target that is
still attached under another namespace of the same realm is *deferred*: it
is reported in :attr:`ReconcileResult.deferred` and left to the owning
namespace's pass to release.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, Optional

from sqlalchemy.orm import Session

from jvmscope.core.events import EventKind
from jvmscope.core.logging import get_logger
from jvmscope.engine.delta import compute_delta
from jvmscope.engine.observations import Observation
from jvmscope.engine.topology import Topology, chain_keys, record_event, scope_key
from jvmscope.models.node import DiscoveryNode, NodeType
from jvmscope.models.target import Target

logger = get_logger(__name__)

__all__ = ["ReconcileResult", "Reconciler", "scope_key"]


@dataclass
class ReconcileResult:
    """Connect URLs affected by one apply stage.

    ``deferred`` maps connect URLs that were observed in this scope but are
    still attached under another namespace to that namespace's name.
    """

    scope: str
    found: list[str] = field(default_factory=list)
    lost: list[str] = field(default_factory=list)
    modified: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    deferred: dict[str, str] = field(default_factory=dict)

    @property
    def changed(self) -> bool:
        return bool(self.found or self.lost or self.modified)


class Reconciler:
    """Applies observed target sets to the persisted topology.

    Args:
        session: The synchronous session of the apply transaction.
    """

    def __init__(self, session: Session) -> None:
        self.session = session
        self.topology = Topology(session)

    def scope_node(
        self,
        realm: str,
        namespace: Optional[str] = None,
        namespace_labels: Optional[dict[str, str]] = None,
    ) -> DiscoveryNode:
        """Return the Realm node, or the Namespace node below it, creating either on demand."""
        realm_node = self.topology.ensure_realm(realm)
        if namespace is None:
            return realm_node
        return self.topology.attach_environment(
            realm_node,
            namespace,
            NodeType.NAMESPACE,
            labels=namespace_labels,
        )

    def apply(
        self,
        realm: str,
        observations: Iterable[Observation],
        namespace: Optional[str] = None,
        namespace_labels: Optional[dict[str, str]] = None,
    ) -> ReconcileResult:
        """Reconcile one scope against *observations*.

        Args:
            realm: Realm name owning the scope.
            observations: The complete observed set for the scope.
            namespace: Namespace below the realm, or ``None`` for a
                realm-wide scope.
            namespace_labels: Labels of the namespace node.

        Returns:
            A :class:`ReconcileResult` listing what changed.
        """
        key = scope_key(realm, namespace)
        result = ReconcileResult(scope=key)
        scope = self.scope_node(realm, namespace, namespace_labels)

        persisted: dict[str, Target] = {
            target.connect_url: target for target in scope.subtree_targets()
        }
        observed: dict[str, Observation] = {}
        for observation in observations:
            if observation.connect_url in observed:
                logger.debug(
                    "Duplicate observation ignored",
                    extra={"action": "observation_duplicate", "target": observation.connect_url},
                )
                continue
            observed[observation.connect_url] = observation

        delta = compute_delta(persisted.keys(), observed.keys())

        # -- Removals ----------------------------------------------------------
        for url in delta.removed:
            self.topology.detach_target(persisted[url])
            result.lost.append(url)
        if delta.removed:
            self.session.flush()

        # -- Retained ----------------------------------------------------------
        for url in delta.retained:
            target = persisted[url]
            observation = observed[url]
            changed = self.topology.update_target(target, observation.target, emit=False)
            if target.discovery_node is not None and chain_keys(
                target.discovery_node, scope
            ) != [node.key for node in observation.chain[:-1]]:
                moved = self.topology.relocate_target(
                    target, self._persist_chain(scope, observation), emit=False
                )
                changed = moved or changed
            if changed:
                record_event(self.session, EventKind.MODIFIED, target)
                result.modified.append(url)

        # -- Additions ---------------------------------------------------------
        for url in delta.added:
            observation = observed[url]
            existing = self.topology.find_target(url)
            if existing is not None:
                owner_realm = self.topology.realm_of(existing.discovery_node)
                owner_namespace = (
                    self._owner_namespace(existing.discovery_node, owner_realm)
                    if owner_realm is not None and owner_realm.name == realm
                    else None
                )
                if owner_namespace is not None and namespace is not None:
                    logger.info(
                        "Target still attached in namespace %s, deferred",
                        owner_namespace,
                        extra={"action": "target_deferred", "target": url},
                    )
                    result.deferred[url] = owner_namespace
                    continue
                logger.warning(
                    "Target already attached in realm %s, skipped",
                    owner_realm.name if owner_realm is not None else "-",
                    extra={"action": "target_conflict", "target": url},
                )
                result.skipped.append(url)
                continue

            parent = self._persist_chain(scope, observation)
            self.topology.attach_target(parent, observation.target, observation.node.node_type)
            result.found.append(url)

        if result.changed:
            logger.info(
                "Reconciled scope: %d found, %d lost, %d modified",
                len(result.found),
                len(result.lost),
                len(result.modified),
                extra={"action": "reconcile_applied", "target": key},
            )
        return result

    def _persist_chain(self, scope: DiscoveryNode, observation: Observation) -> DiscoveryNode:
        """Merge the observation's ancestor chain under *scope* and return the leaf's parent."""
        parent = scope
        for spec in observation.chain[:-1]:
            parent = self.topology.attach_environment(
                parent,
                spec.name,
                spec.node_type,
                labels=spec.labels,
            )
        return parent

    @staticmethod
    def _owner_namespace(
        node: Optional[DiscoveryNode],
        realm_node: DiscoveryNode,
    ) -> Optional[str]:
        """Return the Namespace directly below *realm_node* that contains *node*."""
        while node is not None and node.parent is not None and node.parent is not realm_node:
            node = node.parent
        if node is not None and node.node_type == NodeType.NAMESPACE.value:
            return node.name
        return None
