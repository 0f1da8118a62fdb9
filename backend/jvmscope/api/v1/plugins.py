"""
Read-only discovery plugin records.
"""

from __future__ import annotations

from typing import Any, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status

from jvmscope.api.deps import get_plugin_service
from jvmscope.discovery.plugins import PluginService

router = APIRouter()


@router.get("/", summary="List discovery plugins")
async def list_plugins(
    realm: Optional[str] = Query(None, description="Only the plugin owning this realm."),
    plugins: PluginService = Depends(get_plugin_service),
) -> list[dict[str, Any]]:
    """Return every plugin record, builtin ones included.

    Realm nodes are returned without their children.
    """
    return await plugins.list_plugins(realm)


@router.get("/{plugin_id}", summary="Get a discovery plugin")
async def get_plugin(
    plugin_id: UUID,
    plugins: PluginService = Depends(get_plugin_service),
) -> dict[str, Any]:
    plugin = await plugins.get(plugin_id)
    if plugin is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Plugin '{plugin_id}' not found.",
        )
    return plugin
