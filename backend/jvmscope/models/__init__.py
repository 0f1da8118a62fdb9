"""
JvmScope ORM models package.

Re-exports every model class so that consumers can import directly from
``jvmscope.models``::

    from jvmscope.models import DiscoveryNode, NodeType, Target
"""

from jvmscope.models.key_value import KeyValue
from jvmscope.models.node import STRUCTURAL_TYPES, DiscoveryNode, NodeType
from jvmscope.models.plugin import DiscoveryPlugin
from jvmscope.models.target import Target

__all__: list[str] = [
    "KeyValue",
    "STRUCTURAL_TYPES",
    "DiscoveryNode",
    "NodeType",
    "DiscoveryPlugin",
    "Target",
]
