"""
Pydantic v2 schemas for the discovery tree and the plugin protocol.

Wire names follow the topology payload shape (``nodeType``,
``connectUrl``...).  Every model accepts both the wire name and the Python
field name.
"""

from __future__ import annotations

from typing import Any, Optional, Union
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

# ---------------------------------------------------------------------------
# Shared
# ---------------------------------------------------------------------------


class KeyValueSchema(BaseModel):
    """One label or annotation entry."""

    key: str
    value: str


LabelsField = Union[dict[str, str], list[KeyValueSchema]]


class AnnotationsSchema(BaseModel):
    """Two-tier target annotations."""

    platform: LabelsField = Field(default_factory=dict)
    cryostat: LabelsField = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Published subtree
# ---------------------------------------------------------------------------


class PublishedTarget(BaseModel):
    """A target inside a plugin-published subtree."""

    connect_url: str = Field(..., alias="connectUrl", min_length=1)
    alias: str = Field(..., min_length=1)
    jvm_id: Optional[str] = Field(default=None, alias="jvmId")
    labels: LabelsField = Field(default_factory=dict)
    annotations: AnnotationsSchema = Field(default_factory=AnnotationsSchema)

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("alias")
    @classmethod
    def alias_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("Target alias must not be blank.")
        return value


class PublishedNode(BaseModel):
    """A node of a plugin-published subtree.

    Leaf nodes carry ``target`` and no children; environment nodes carry
    ``children``.
    """

    name: str = Field(..., min_length=1)
    node_type: str = Field(..., alias="nodeType", min_length=1)
    labels: LabelsField = Field(default_factory=dict)
    children: list["PublishedNode"] = Field(default_factory=list)
    target: Optional[PublishedTarget] = None

    model_config = ConfigDict(populate_by_name=True)

    def to_payload(self) -> dict[str, Any]:
        """Return the plain topology payload understood by the engine."""
        return self.model_dump(by_alias=True, exclude_none=True)


PublishedNode.model_rebuild()


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


class PluginRegistration(BaseModel):
    """Payload for ``POST /api/v1/discovery/``.

    Attributes:
        realm: Realm name the plugin will own.
        callback: Liveness callback URL, optionally with ``user:pass@``.
        id: Plugin id of an earlier registration being refreshed.
        token: Token of that earlier registration.
    """

    realm: str = Field(..., min_length=1, examples=["my-plugin"])
    callback: str = Field(..., min_length=1, examples=["http://plugin:8080/callback"])
    id: Optional[UUID] = None
    token: Optional[str] = None


class RegistrationResponse(BaseModel):
    """Identity and token handed to a registered plugin."""

    id: UUID
    token: str
