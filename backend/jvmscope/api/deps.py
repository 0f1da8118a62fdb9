"""
Shared FastAPI dependency functions for the JvmScope API.

Every handler reaches the discovery engine through the
:class:`~jvmscope.runtime.DiscoveryRuntime` stored on ``app.state`` at
startup, so tests can install a runtime bound to their own database.
"""

from __future__ import annotations

from typing import Optional

from fastapi import Depends, Header, HTTPException, Query, Request, status

from jvmscope.core.security import parse_bearer_token
from jvmscope.discovery.custom import CustomTargetService
from jvmscope.discovery.plugins import PluginService
from jvmscope.runtime import DiscoveryRuntime


def get_runtime(request: Request) -> DiscoveryRuntime:
    """Return the running discovery runtime.

    Raises:
        HTTPException: *503 Service Unavailable* before startup completed.
    """
    runtime: Optional[DiscoveryRuntime] = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Discovery runtime is not running.",
        )
    return runtime


def get_plugin_service(runtime: DiscoveryRuntime = Depends(get_runtime)) -> PluginService:
    return runtime.plugins


def get_custom_targets(
    runtime: DiscoveryRuntime = Depends(get_runtime),
) -> CustomTargetService:
    return runtime.custom_targets


def get_request_address(request: Request) -> Optional[str]:
    """Return the caller's network address, if the server knows it."""
    return request.client.host if request.client is not None else None


def get_plugin_token(
    authorization: Optional[str] = Header(default=None),
    token: Optional[str] = Query(default=None, description="Plugin token."),
) -> Optional[str]:
    """Read the plugin token from ``Authorization: Bearer`` or ``?token=``."""
    return parse_bearer_token(authorization) or token
