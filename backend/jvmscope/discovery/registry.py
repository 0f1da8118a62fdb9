"""
Backend registry for JvmScope discovery backends.

Backends register themselves with the :meth:`BackendRegistry.register`
decorator at import time.  The application lifespan asks the registry for
every backend, then starts the ones that are enabled and available.
"""

from __future__ import annotations

from typing import Optional, Type

from jvmscope.config import Settings
from jvmscope.discovery.base import DiscoveryBackend


class BackendRegistry:
    """Manages all available discovery backends.

    Example::

        @BackendRegistry.register
        class MyBackend(DiscoveryBackend):
            name = "mybackend"
            realm = "Mine"
            ...
    """

    _backends: dict[str, Type[DiscoveryBackend]] = {}

    @classmethod
    def register(cls, backend_class: Type[DiscoveryBackend]) -> Type[DiscoveryBackend]:
        """Class-method decorator that registers a backend class.

        Args:
            backend_class: The backend class.  Its ``name`` attribute is
                used as the registry key.

        Returns:
            The unmodified *backend_class* so the decorator is transparent.
        """
        cls._backends[backend_class.name] = backend_class
        return backend_class

    @classmethod
    def names(cls) -> list[str]:
        return sorted(cls._backends)

    @classmethod
    def get_backend(cls, name: str, settings: Optional[Settings] = None) -> DiscoveryBackend:
        """Instantiate a single backend by name.

        Raises:
            KeyError: If no backend with the given name is registered.
        """
        return cls._backends[name](settings)

    @classmethod
    def get_all(cls, settings: Optional[Settings] = None) -> list[DiscoveryBackend]:
        """Return fresh instances of every registered backend, ordered by name."""
        return [cls._backends[name](settings) for name in cls.names()]

    @classmethod
    def get_enabled(cls, settings: Optional[Settings] = None) -> list[DiscoveryBackend]:
        """Return instances of the backends whose configuration turns them on."""
        return [backend for backend in cls.get_all(settings) if backend.enabled()]
