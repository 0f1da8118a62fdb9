"""
Discovery tree and plugin protocol endpoints.

- ``GET    /discovery/``      -- the whole topology tree, nested from Universe.
- ``POST   /discovery/``      -- register (or refresh) a plugin.
- ``POST   /discovery/{id}``  -- publish the plugin's realm subtree.
- ``DELETE /discovery/{id}``  -- deregister the plugin.

Publish and deregister require the token issued at registration, presented
as ``Authorization: Bearer <token>`` or as the ``token`` query parameter.
"""

from __future__ import annotations

from typing import Any, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Request, status

from jvmscope.api.deps import (
    get_plugin_service,
    get_plugin_token,
    get_request_address,
    get_runtime,
)
from jvmscope.api.schemas.discovery import (
    PluginRegistration,
    PublishedNode,
    RegistrationResponse,
)
from jvmscope.discovery.plugins import PluginService
from jvmscope.runtime import DiscoveryRuntime

router = APIRouter()


# ---------------------------------------------------------------------------
# GET /discovery/
# ---------------------------------------------------------------------------


@router.get("/", summary="Get the discovery tree")
async def get_discovery_tree(
    runtime: DiscoveryRuntime = Depends(get_runtime),
) -> dict[str, Any]:
    """Return the committed topology tree.

    Leaf nodes carry ``target`` and no ``children``; every other node
    carries ``children`` (possibly empty).
    """
    return await runtime.topology()


# ---------------------------------------------------------------------------
# POST /discovery/
# ---------------------------------------------------------------------------


@router.post(
    "/",
    response_model=RegistrationResponse,
    summary="Register a discovery plugin",
)
async def register_plugin(
    payload: PluginRegistration,
    plugins: PluginService = Depends(get_plugin_service),
    request_address: Optional[str] = Depends(get_request_address),
) -> RegistrationResponse:
    """Admit a plugin after pinging its callback and issue its token.

    Raises:
        AdmissionError: Mapped to *400* for an unreachable callback, a
            malformed credential, or a realm already taken.
        AuthorizationError: Mapped to *401* when a refresh presents an
            invalid token.
    """
    registration = await plugins.register(
        payload.realm,
        payload.callback,
        plugin_id=payload.id,
        token=payload.token,
        request_address=request_address,
    )
    return RegistrationResponse(id=registration.plugin_id, token=registration.token)


# ---------------------------------------------------------------------------
# POST /discovery/{plugin_id}
# ---------------------------------------------------------------------------


@router.post("/{plugin_id}", summary="Publish a plugin's realm subtree")
async def publish_subtree(
    plugin_id: UUID,
    nodes: list[PublishedNode],
    request: Request,
    plugins: PluginService = Depends(get_plugin_service),
    token: Optional[str] = Depends(get_plugin_token),
    request_address: Optional[str] = Depends(get_request_address),
) -> dict[str, Any]:
    """Replace the realm subtree of *plugin_id* with *nodes*."""
    await plugins.authorize(plugin_id, token, request.url.path, request_address)
    try:
        children = await plugins.publish(plugin_id, [node.to_payload() for node in nodes])
    except (KeyError, ValueError) as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Malformed subtree: {exc}",
        ) from exc
    return {"id": str(plugin_id), "children": children}


# ---------------------------------------------------------------------------
# DELETE /discovery/{plugin_id}
# ---------------------------------------------------------------------------


@router.delete("/{plugin_id}", summary="Deregister a discovery plugin")
async def deregister_plugin(
    plugin_id: UUID,
    request: Request,
    plugins: PluginService = Depends(get_plugin_service),
    token: Optional[str] = Depends(get_plugin_token),
    request_address: Optional[str] = Depends(get_request_address),
) -> dict[str, Any]:
    """Delete the plugin together with its realm subtree.

    Builtin plugins are rejected with *403* before any token check.
    """
    plugin = await plugins.get(plugin_id)
    if plugin is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Plugin '{plugin_id}' not found.",
        )
    if plugin["builtin"]:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Builtin discovery plugins cannot be deregistered.",
        )
    await plugins.authorize(plugin_id, token, request.url.path, request_address)
    return await plugins.deregister(plugin_id)
