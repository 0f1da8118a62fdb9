"""
Pydantic v2 schemas for the JvmScope REST API.

Re-exports every public schema so consumers can do::

    from jvmscope.api.schemas import PluginRegistration, TargetCreate
"""

from jvmscope.api.schemas.discovery import (
    AnnotationsSchema,
    KeyValueSchema,
    PluginRegistration,
    PublishedNode,
    PublishedTarget,
    RegistrationResponse,
)
from jvmscope.api.schemas.target import TargetCreate

__all__: list[str] = [
    "AnnotationsSchema",
    "KeyValueSchema",
    "PluginRegistration",
    "PublishedNode",
    "PublishedTarget",
    "RegistrationResponse",
    "TargetCreate",
]
