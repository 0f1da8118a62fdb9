"""
Target model.

Represents one discoverable, individually connectable JVM.  A target is
identified by its connect URL, which is unique across the whole topology,
and is always attached to exactly one leaf
:class:`~jvmscope.models.node.DiscoveryNode`.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Optional

from sqlalchemy import ForeignKey, Integer, JSON, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from jvmscope.core.database import Base
from jvmscope.core.urls import is_agent_url
from jvmscope.models.key_value import KeyValue

if TYPE_CHECKING:
    from jvmscope.models.node import DiscoveryNode


# Engine-assigned annotation keys.
REALM_ANNOTATION: str = "REALM"
HOST_ANNOTATION: str = "HOST"
PORT_ANNOTATION: str = "PORT"
NAMESPACE_ANNOTATION: str = "NAMESPACE"
POD_NAME_ANNOTATION: str = "POD_NAME"
OBJECT_NAME_ANNOTATION: str = "OBJECT_NAME"
JAVA_MAIN_ANNOTATION: str = "JAVA_MAIN"


def empty_annotations() -> dict[str, dict[str, str]]:
    return {"platform": {}, "cryostat": {}}


class Target(Base):
    """A connectable JVM.

    Attributes:
        id: Integer primary key.
        connect_url: JMX service URL or agent callback URL.  Unique.
        alias: Human readable name.  Unique; colliding discoveries get a
            port or counter suffix.
        jvm_id: Opaque JVM identifier, filled in once the target has been
            probed successfully.
        labels: Environment supplied labels.
        annotations: Two-tier annotation map: ``platform`` holds
            environment-native metadata, ``cryostat`` holds engine-assigned
            metadata such as the realm name, host and port.
        discovery_node_id: Foreign key of the wrapping leaf node.
        discovery_node: The wrapping leaf node.
    """

    __tablename__ = "targets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    connect_url: Mapped[str] = mapped_column(
        String(2048),
        nullable=False,
        unique=True,
        index=True,
    )
    alias: Mapped[str] = mapped_column(
        String(1024),
        nullable=False,
        unique=True,
        index=True,
    )
    jvm_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    labels: Mapped[dict[str, str]] = mapped_column(JSON, nullable=False, default=dict)
    annotations: Mapped[dict[str, dict[str, str]]] = mapped_column(
        JSON,
        nullable=False,
        default=empty_annotations,
    )
    discovery_node_id: Mapped[Optional[int]] = mapped_column(
        Integer,
        ForeignKey("discovery_nodes.id", ondelete="CASCADE"),
        nullable=True,
        unique=True,
    )

    # -- Relationships ---------------------------------------------------------
    discovery_node: Mapped[Optional["DiscoveryNode"]] = relationship(
        "DiscoveryNode",
        back_populates="target",
    )

    @property
    def platform_annotations(self) -> dict[str, str]:
        return dict((self.annotations or {}).get("platform") or {})

    @property
    def cryostat_annotations(self) -> dict[str, str]:
        return dict((self.annotations or {}).get("cryostat") or {})

    @property
    def realm(self) -> Optional[str]:
        return self.cryostat_annotations.get(REALM_ANNOTATION)

    @property
    def is_agent(self) -> bool:
        return is_agent_url(self.connect_url)

    def to_dict(self) -> dict[str, Any]:
        """Serialise the target with labels and annotations as sorted key/value lists."""
        return {
            "id": self.id,
            "connectUrl": self.connect_url,
            "alias": self.alias,
            "jvmId": self.jvm_id,
            "agent": self.is_agent,
            "labels": [kv.to_dict() for kv in KeyValue.list_from_map(self.labels or {})],
            "annotations": {
                "platform": [
                    kv.to_dict() for kv in KeyValue.list_from_map(self.platform_annotations)
                ],
                "cryostat": [
                    kv.to_dict() for kv in KeyValue.list_from_map(self.cryostat_annotations)
                ],
            },
        }

    def __repr__(self) -> str:
        return f"<Target alias={self.alias!r} connect_url={self.connect_url!r}>"
