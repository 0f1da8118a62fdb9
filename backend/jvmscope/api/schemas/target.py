"""
Pydantic v2 schemas for manually registered targets.
"""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class TargetCreate(BaseModel):
    """Payload for ``POST /api/v1/targets/``.

    Attributes:
        connect_url: JMX service URL, agent URL, or ``host:port`` shorthand.
        alias: Display name.  Required, and unique across all targets.
        username: Optional JMX credential used for the connectivity check.
        password: Optional JMX credential used for the connectivity check.
    """

    connect_url: str = Field(
        ...,
        alias="connectUrl",
        min_length=1,
        examples=["localhost:9091", "service:jmx:rmi:///jndi/rmi://app:9091/jmxrmi"],
    )
    alias: Optional[str] = Field(default=None, examples=["inventory-service"])
    username: Optional[str] = None
    password: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)
