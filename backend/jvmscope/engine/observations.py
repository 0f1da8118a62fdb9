"""
In-memory topology fragments produced by the observe stage.

Backends never touch the database while observing.  They describe what they
saw as :class:`Observation` objects: a :class:`TargetSpec` plus the leaf
:class:`NodeSpec` wrapping it, whose ``parent`` links walk up the ownership
chain (Pod, ReplicaSet, Deployment...).  The chain root is later attached
under the scope's Namespace or Realm node by the reconciler.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional, Union

from jvmscope.models.key_value import KeyValue
from jvmscope.models.node import NodeType
from jvmscope.models.target import REALM_ANNOTATION


def kind_of(node_type: Union[NodeType, str]) -> str:
    """Return the stored kind string for *node_type*."""
    if isinstance(node_type, NodeType):
        return node_type.value
    return str(node_type)


def as_map(value: Any) -> dict[str, str]:
    """Accept a plain mapping or a ``[{"key": ..., "value": ...}]`` list."""
    if not value:
        return {}
    if isinstance(value, dict):
        return {str(key): str(val) for key, val in value.items()}
    return KeyValue.map_from_list(
        KeyValue(str(item["key"]), str(item["value"])) for item in value
    )


@dataclass(eq=False)
class TargetSpec:
    """A target as observed, before it is persisted."""

    connect_url: str
    alias: str
    labels: dict[str, str] = field(default_factory=dict)
    platform_annotations: dict[str, str] = field(default_factory=dict)
    cryostat_annotations: dict[str, str] = field(default_factory=dict)
    jvm_id: Optional[str] = None

    def __post_init__(self) -> None:
        if not self.connect_url:
            raise ValueError("Target connect URL must not be empty.")
        if not self.alias or not self.alias.strip():
            raise ValueError("Target alias must not be blank.")

    @property
    def realm(self) -> Optional[str]:
        return self.cryostat_annotations.get(REALM_ANNOTATION)

    def annotations(self) -> dict[str, dict[str, str]]:
        return {
            "platform": dict(self.platform_annotations),
            "cryostat": dict(self.cryostat_annotations),
        }


@dataclass(eq=False)
class NodeSpec:
    """A tree node as observed, before it is persisted."""

    name: str
    node_type: str
    labels: dict[str, str] = field(default_factory=dict)
    children: list["NodeSpec"] = field(default_factory=list, repr=False)
    parent: Optional["NodeSpec"] = field(default=None, repr=False)
    target: Optional[TargetSpec] = None

    def __post_init__(self) -> None:
        self.node_type = kind_of(self.node_type)

    @property
    def leaf(self) -> bool:
        return self.target is not None

    @property
    def key(self) -> tuple[str, str]:
        return (self.name, self.node_type)

    @classmethod
    def for_target(
        cls,
        target: TargetSpec,
        node_type: Union[NodeType, str] = NodeType.JVM,
    ) -> "NodeSpec":
        """Build the leaf node wrapping *target*, named after its connect URL."""
        return cls(
            name=target.connect_url,
            node_type=kind_of(node_type),
            labels=dict(target.labels),
            target=target,
        )

    def add_child(self, child: "NodeSpec") -> None:
        if self.leaf:
            raise ValueError(f"Leaf node {self.name!r} cannot have children.")
        if child.parent is self:
            return
        child.parent = self
        self.children.append(child)

    def root(self) -> "NodeSpec":
        node = self
        while node.parent is not None:
            node = node.parent
        return node

    def path_from_root(self) -> list["NodeSpec"]:
        """Return the chain from the topmost ancestor down to this node."""
        chain: list[NodeSpec] = []
        node: Optional[NodeSpec] = self
        while node is not None:
            chain.append(node)
            node = node.parent
        chain.reverse()
        return chain

    def iter_leaves(self):
        if self.leaf:
            yield self
            return
        for child in self.children:
            yield from child.iter_leaves()

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "NodeSpec":
        """Build a subtree from a published plugin payload.

        The payload uses the same shape as the topology API: ``name``,
        ``nodeType``, ``labels`` and either ``children`` or ``target``.
        """
        target_payload = payload.get("target")
        target: Optional[TargetSpec] = None
        if target_payload is not None:
            annotations = target_payload.get("annotations") or {}
            target = TargetSpec(
                connect_url=target_payload["connectUrl"],
                alias=target_payload["alias"],
                labels=as_map(target_payload.get("labels")),
                platform_annotations=as_map(annotations.get("platform")),
                cryostat_annotations=as_map(annotations.get("cryostat")),
                jvm_id=target_payload.get("jvmId"),
            )
        node = cls(
            name=payload["name"],
            node_type=payload["nodeType"],
            labels=as_map(payload.get("labels")),
            target=target,
        )
        if target is None:
            for child_payload in payload.get("children") or []:
                node.add_child(cls.from_dict(child_payload))
        return node


@dataclass(eq=False)
class Observation:
    """One observed target together with its in-memory ownership chain."""

    target: TargetSpec
    node: NodeSpec

    @classmethod
    def direct(
        cls,
        target: TargetSpec,
        node_type: Union[NodeType, str] = NodeType.JVM,
    ) -> "Observation":
        """An observation attached directly under the scope node."""
        return cls(target=target, node=NodeSpec.for_target(target, node_type))

    @property
    def connect_url(self) -> str:
        return self.target.connect_url

    @property
    def root(self) -> NodeSpec:
        return self.node.root()

    @property
    def chain(self) -> list[NodeSpec]:
        return self.node.path_from_root()
