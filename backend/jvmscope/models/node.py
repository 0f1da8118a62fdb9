"""
DiscoveryNode model.

A node in the discovery topology tree.  The root is the single Universe
node; its children are Realms (one per discovery source); below a Realm the
shape mirrors whatever environment produced the targets (Namespaces, owning
workloads, Pods).  Leaf nodes wrap exactly one
:class:`~jvmscope.models.target.Target` and can never have children.
"""

from __future__ import annotations

import enum
from typing import TYPE_CHECKING, Any, Optional

from sqlalchemy import Boolean, ForeignKey, Integer, JSON, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from jvmscope.core.database import Base

if TYPE_CHECKING:
    from jvmscope.models.target import Target


# ── Node types ───────────────────────────────────────────────────────────────

class NodeType(str, enum.Enum):
    """The closed set of node kinds the engine itself creates.

    The value is the kind string stored in :attr:`DiscoveryNode.node_type`.
    Plugins may publish nodes with other kind strings; those are stored as-is.
    """

    UNIVERSE = "Universe"
    REALM = "Realm"
    # Cluster kinds
    NAMESPACE = "Namespace"
    STATEFULSET = "StatefulSet"
    DAEMONSET = "DaemonSet"
    DEPLOYMENT = "Deployment"
    REPLICASET = "ReplicaSet"
    REPLICATIONCONTROLLER = "ReplicationController"
    DEPLOYMENTCONFIG = "DeploymentConfig"
    POD = "Pod"
    ENDPOINT = "Endpoint"
    ENDPOINT_SLICE = "EndpointSlice"
    # Generic kinds
    ENVIRONMENT = "Environment"
    JVM = "JVM"
    AGENT = "CryostatAgent"

    @property
    def kind(self) -> str:
        return self.value

    @classmethod
    def from_kind(cls, kind: Optional[str]) -> Optional["NodeType"]:
        """Case-insensitive lookup of a kind string, ``None`` when unknown."""
        if not kind:
            return None
        for node_type in cls:
            if node_type.value.lower() == kind.lower():
                return node_type
        return None

    def __str__(self) -> str:
        return self.value


STRUCTURAL_TYPES: frozenset[str] = frozenset(
    {NodeType.UNIVERSE.value, NodeType.REALM.value, NodeType.NAMESPACE.value}
)
"""Node kinds that are never pruned, even when they have no children."""


# ── Model ────────────────────────────────────────────────────────────────────

class DiscoveryNode(Base):
    """A node of the discovery topology tree.

    Attributes:
        id: Integer primary key.
        name: Display and lookup key, unique among siblings.
        node_type: Kind string (see :class:`NodeType`).
        labels: Free-form string labels.
        leaf: ``True`` for nodes wrapping a target.  Leaf nodes can never
            hold children, which is different from an environment node that
            currently has zero children.
        parent_id: Foreign key to the parent node (``None`` only for the
            Universe).
        parent: Parent node relationship.
        children: Ordered child nodes.  Removing a child from this
            collection deletes it together with its subtree and target.
        target: The wrapped target for leaf nodes.
    """

    __tablename__ = "discovery_nodes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(1024), nullable=False, index=True)
    node_type: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    labels: Mapped[dict[str, str]] = mapped_column(JSON, nullable=False, default=dict)
    leaf: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    parent_id: Mapped[Optional[int]] = mapped_column(
        Integer,
        ForeignKey("discovery_nodes.id", ondelete="CASCADE"),
        nullable=True,
        index=True,
    )

    # -- Relationships ---------------------------------------------------------
    parent: Mapped[Optional["DiscoveryNode"]] = relationship(
        "DiscoveryNode",
        back_populates="children",
        remote_side="DiscoveryNode.id",
    )
    children: Mapped[list["DiscoveryNode"]] = relationship(
        "DiscoveryNode",
        back_populates="parent",
        cascade="all, delete-orphan",
        order_by="DiscoveryNode.id",
    )
    target: Mapped[Optional["Target"]] = relationship(
        "Target",
        back_populates="discovery_node",
        uselist=False,
        cascade="all, delete-orphan",
    )

    # -- Tree helpers ----------------------------------------------------------

    @property
    def is_structural(self) -> bool:
        return self.node_type in STRUCTURAL_TYPES

    def has_children(self) -> bool:
        return not self.leaf and len(self.children) > 0

    def add_child(self, child: "DiscoveryNode") -> None:
        """Append *child* under this node.

        Raises:
            ValueError: If this node is a leaf, or a sibling with the same
                name and kind already exists.
        """
        if self.leaf:
            raise ValueError(f"Leaf node {self.name!r} cannot have children.")
        for sibling in self.children:
            if sibling is child:
                return
            if sibling.name == child.name and sibling.node_type == child.node_type:
                raise ValueError(
                    f"Node {self.name!r} already has a {child.node_type} child "
                    f"named {child.name!r}."
                )
        self.children.append(child)

    def iter_subtree(self):
        """Yield this node and every descendant, depth first."""
        yield self
        if self.leaf:
            return
        for child in self.children:
            yield from child.iter_subtree()

    def subtree_targets(self) -> list["Target"]:
        """Return the targets of every leaf below (and including) this node."""
        return [
            node.target
            for node in self.iter_subtree()
            if node.leaf and node.target is not None
        ]

    def to_dict(self, *, nested: bool = True) -> dict[str, Any]:
        """Serialise the node (and, when *nested*, its subtree)."""
        payload: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "nodeType": self.node_type,
            "labels": dict(self.labels or {}),
        }
        if self.leaf:
            if self.target is not None:
                payload["target"] = self.target.to_dict()
        elif nested:
            payload["children"] = [child.to_dict() for child in self.children]
        return payload

    def __repr__(self) -> str:
        return f"<DiscoveryNode {self.node_type}:{self.name!r} id={self.id}>"
