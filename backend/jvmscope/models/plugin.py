"""
DiscoveryPlugin model.

A registration record for a discovery source.  The four first-party
backends (JDP, Podman/Docker, Kubernetes, custom targets) own *builtin*
plugin records that can never be deleted through the API; externally
registered plugins own a Realm node that they replace wholesale whenever
they publish.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Optional

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from jvmscope.core.database import Base

if TYPE_CHECKING:
    from jvmscope.models.node import DiscoveryNode


class DiscoveryPlugin(Base):
    """A discovery source registration.

    Attributes:
        id: UUID primary key, handed to the plugin as its identity.
        realm_id: Foreign key of the owned Realm node.
        realm: The owned Realm node.
        callback: Liveness callback URL (``None`` for builtins).  Stored
            without any userinfo.
        credential_username: Basic auth user for the callback, if any.
        credential_password: Basic auth password for the callback, if any.
        builtin: ``True`` for first-party backends.
        registered_at: When the record was created.
    """

    __tablename__ = "discovery_plugins"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )
    realm_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("discovery_nodes.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    callback: Mapped[Optional[str]] = mapped_column(
        String(2048),
        nullable=True,
        unique=True,
    )
    credential_username: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    credential_password: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    builtin: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    registered_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    # -- Relationships ---------------------------------------------------------
    realm: Mapped["DiscoveryNode"] = relationship("DiscoveryNode")

    @property
    def has_credential(self) -> bool:
        return bool(self.credential_username)

    def to_dict(self, *, include_subtree: bool = False) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "realm": self.realm.to_dict(nested=include_subtree),
            "callback": self.callback,
            "builtin": self.builtin,
        }

    def __repr__(self) -> str:
        return f"<DiscoveryPlugin id={self.id} builtin={self.builtin} callback={self.callback!r}>"
