"""
Discovery engine exception types.

Only :class:`AuthorizationError`, :class:`AdmissionError`,
:class:`TopologyConflictError` and :class:`TargetConnectionError` are meant
to reach an external caller; everything else is recovered inside the
backend loops.
"""

from __future__ import annotations


class DiscoveryError(Exception):
    """Base class for all discovery engine errors."""


class AuthorizationError(DiscoveryError):
    """A plugin token is missing, malformed, expired, or has mismatched claims."""


class AdmissionError(DiscoveryError):
    """A plugin registration was rejected (unreachable callback, bad credential)."""


class TopologyConflictError(DiscoveryError):
    """A mutation would place the same target in two tree locations."""


class TargetConnectionError(DiscoveryError):
    """A target could not be reached through the connection collaborator."""
