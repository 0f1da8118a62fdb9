"""
Ownership-chain resolution.

Turns one observed resource reference (for example the Pod behind a JMX
endpoint) into an in-memory chain of :class:`NodeSpec` objects by following
owner references upward: Pod, ReplicaSet, Deployment.  The highest node
reached becomes the chain root that the reconciler attaches under the
namespace node.

A resolver instance lives for exactly one reconciliation pass.  Every
``(namespace, kind, name)`` triple is looked up at most once per pass, so 50
Pods of one Deployment share a single Deployment node and cost a single API
read.

Chain termination rules:

- The current object has no owner references.
- The chosen owner's kind is not supported.  The owner is the first owner
  reference of a supported kind, or the first owner reference when none is
  supported.
- The owner object no longer exists.  Its node is still built, labelled
  with the namespace, and becomes the chain root.

Any other lookup error propagates and aborts the observation pass.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Iterable, Optional, Protocol

from jvmscope.core.logging import get_logger
from jvmscope.engine.observations import NodeSpec

logger = get_logger(__name__)


# ── Metadata types ───────────────────────────────────────────────────────────

@dataclass(frozen=True)
class OwnerReference:
    kind: str
    name: str


@dataclass
class ObjectMeta:
    """The subset of an environment object's metadata the resolver needs."""

    namespace: str
    kind: str
    name: str
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)
    owner_references: list[OwnerReference] = field(default_factory=list)


class OwnerLookup(Protocol):
    """Reads object metadata from the owning environment."""

    def get_metadata(self, namespace: str, kind: str, name: str) -> Optional[ObjectMeta]:
        """Return the object's metadata, or ``None`` if it does not exist."""
        ...


# ── Resolver ─────────────────────────────────────────────────────────────────

class OwnershipChainResolver:
    """Memoising owner-chain builder for one reconciliation pass.

    Args:
        lookup: Metadata source.
        supported_kinds: Kind strings that may appear in a chain.
        node_labels: Builds the labels of a new node from its namespace and
            (possibly missing) metadata.  Defaults to the object's own labels.
    """

    def __init__(
        self,
        lookup: OwnerLookup,
        supported_kinds: Iterable[str],
        node_labels: Optional[Callable[[str, Optional[ObjectMeta]], dict[str, str]]] = None,
    ) -> None:
        self._lookup = lookup
        self._supported: dict[str, str] = {kind.lower(): kind for kind in supported_kinds}
        self._node_labels = node_labels or _default_labels
        self._cache: dict[tuple[str, str, str], tuple[Optional[ObjectMeta], NodeSpec]] = {}
        self.lookups: int = 0

    def is_supported(self, kind: Optional[str]) -> bool:
        return bool(kind) and kind.lower() in self._supported

    def node_for(
        self,
        namespace: str,
        kind: str,
        name: str,
    ) -> Optional[tuple[Optional[ObjectMeta], NodeSpec]]:
        """Return the memoised ``(metadata, node)`` pair for an object.

        Returns ``None`` for unsupported kinds.
        """
        if not self.is_supported(kind):
            return None
        canonical_kind = self._supported[kind.lower()]
        key = (namespace, canonical_kind, name)
        cached = self._cache.get(key)
        if cached is not None:
            return cached

        self.lookups += 1
        meta = self._lookup.get_metadata(namespace, canonical_kind, name)
        if meta is None:
            logger.debug(
                "Owner %s/%s no longer exists",
                canonical_kind,
                name,
                extra={"action": "owner_missing", "target": namespace},
            )
        node = NodeSpec(
            name=name,
            node_type=canonical_kind,
            labels=self._node_labels(namespace, meta),
        )
        self._cache[key] = (meta, node)
        return self._cache[key]

    def resolve(self, namespace: str, kind: str, name: str) -> Optional[NodeSpec]:
        """Return the node for an object with its owner chain linked above it.

        Returns ``None`` when *kind* itself is unsupported.
        """
        start = self.node_for(namespace, kind, name)
        if start is None:
            return None

        child_meta, child = start
        while child.parent is None:
            owner_ref = self.select_owner(child_meta)
            if owner_ref is None:
                break
            owner = self.node_for(namespace, owner_ref.kind, owner_ref.name)
            if owner is None:
                break
            owner_meta, owner_node = owner
            if _links_back(owner_node, child):
                logger.warning(
                    "Ownership cycle at %s/%s",
                    owner_node.node_type,
                    owner_node.name,
                    extra={"action": "owner_cycle", "target": namespace},
                )
                break
            owner_node.add_child(child)
            child_meta, child = owner_meta, owner_node
        return start[1]

    def select_owner(self, meta: Optional[ObjectMeta]) -> Optional[OwnerReference]:
        if meta is None or not meta.owner_references:
            return None
        for owner in meta.owner_references:
            if self.is_supported(owner.kind):
                return owner
        return meta.owner_references[0]


def _default_labels(namespace: str, meta: Optional[ObjectMeta]) -> dict[str, str]:
    return dict(meta.labels) if meta is not None else {}


def _links_back(owner: NodeSpec, child: NodeSpec) -> bool:
    """``True`` when *child* is *owner* or one of its ancestors."""
    node: Optional[NodeSpec] = owner
    while node is not None:
        if node is child:
            return True
        node = node.parent
    return False
