"""
Set comparison of persisted and observed targets.

Targets are compared purely by connect URL.  The result drives the apply
stage of reconciliation: ``removed`` are detached first, ``retained`` are
checked for label or location changes, and ``added`` are attached last.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable


@dataclass(frozen=True)
class TargetDelta:
    """Outcome of :func:`compute_delta`.

    Attributes:
        added:    Connect URLs observed now but not persisted.
        removed:  Connect URLs persisted but no longer observed.
        retained: Connect URLs present on both sides.
    """

    added: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    retained: list[str] = field(default_factory=list)

    @property
    def empty(self) -> bool:
        return not self.added and not self.removed


def compute_delta(persisted: Iterable[str], observed: Iterable[str]) -> TargetDelta:
    """Compare two collections of connect URLs.

    Args:
        persisted: Connect URLs currently stored for the scope.
        observed: Connect URLs seen by the latest observation.

    Returns:
        A :class:`TargetDelta` whose lists are sorted for stable processing
        order.

    Example::

        >>> compute_delta({"a", "b"}, {"b", "c"})
        TargetDelta(added=['c'], removed=['a'], retained=['b'])
    """
    persisted_urls: set[str] = set(persisted)
    observed_urls: set[str] = set(observed)

    return TargetDelta(
        added=sorted(observed_urls - persisted_urls),
        removed=sorted(persisted_urls - observed_urls),
        retained=sorted(persisted_urls & observed_urls),
    )
