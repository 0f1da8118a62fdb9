"""
Target inventory and manual target registration endpoints.

Lists every persisted target, discovered or manual, and manages targets of
the ``Custom Targets`` realm.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, status

from jvmscope.api.deps import get_custom_targets
from jvmscope.api.schemas.target import TargetCreate
from jvmscope.discovery.custom import CustomTargetService

router = APIRouter()

# ---------------------------------------------------------------------------
# GET /targets/
# ---------------------------------------------------------------------------


@router.get("/", summary="List all targets")
async def list_targets(
    custom_targets: CustomTargetService = Depends(get_custom_targets),
) -> list[dict[str, Any]]:
    """Return every persisted target ordered by id."""
    return await custom_targets.list_targets()


# ---------------------------------------------------------------------------
# POST /targets/
# ---------------------------------------------------------------------------


@router.post(
    "/",
    status_code=status.HTTP_201_CREATED,
    summary="Register a custom target",
)
async def create_target(
    payload: TargetCreate,
    dryrun: bool = Query(False, description="Validate without persisting."),
    custom_targets: CustomTargetService = Depends(get_custom_targets),
) -> dict[str, Any]:
    """Validate connectivity and attach the target under ``Custom Targets``.

    Raises:
        HTTPException: *400 Bad Request* for a malformed connect URL or a
            missing or blank alias.
        TopologyConflictError: Mapped to *409* for a duplicate URL or alias.
        TargetConnectionError: Mapped to *400* when the target is unreachable.
    """
    try:
        return await custom_targets.create(
            payload.connect_url,
            payload.alias,
            username=payload.username,
            password=payload.password,
            dryrun=dryrun,
        )
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(exc),
        ) from exc


# ---------------------------------------------------------------------------
# DELETE /targets/{target_id}
# ---------------------------------------------------------------------------


@router.delete("/{target_id}", summary="Delete a custom target")
async def delete_target(
    target_id: int,
    custom_targets: CustomTargetService = Depends(get_custom_targets),
) -> dict[str, Any]:
    """Delete a custom target immediately.  Discovered targets are refused."""
    try:
        deleted = await custom_targets.delete(target_id)
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(exc),
        ) from exc
    if deleted is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Target with id '{target_id}' not found.",
        )
    return deleted
