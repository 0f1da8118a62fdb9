"""
Discovery backends -- import all backends for auto-registration.

Importing this package loads every concrete backend class and, through the
:func:`@BackendRegistry.register <BackendRegistry.register>` decorator,
registers it in the central backend registry.  The application only needs
to ``import jvmscope.discovery`` to have the full catalogue available.
"""

from jvmscope.discovery.registry import BackendRegistry
from jvmscope.discovery.base import DiscoveryBackend
from jvmscope.discovery.jdp import JdpDiscovery
from jvmscope.discovery.containers import DockerDiscovery, PodmanDiscovery
from jvmscope.discovery.kubernetes import KubeApiDiscovery

# Services outside the backend registry
from jvmscope.discovery.custom import CUSTOM_REALM, CustomTargetService
from jvmscope.discovery.plugins import PluginService

__all__: list[str] = [
    "BackendRegistry",
    "DiscoveryBackend",
    "JdpDiscovery",
    "DockerDiscovery",
    "PodmanDiscovery",
    "KubeApiDiscovery",
    # Services
    "CUSTOM_REALM",
    "CustomTargetService",
    "PluginService",
]
