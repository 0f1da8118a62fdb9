"""
Aggregated APIRouter for API version 1.

All v1 endpoint routers are included here and exposed as a single ``router``
instance that is mounted by the FastAPI application in ``jvmscope.main``.
The prefix ``/api/v1`` is applied by the application, so sub-routers only
declare their own resource prefix (e.g. ``/discovery``, ``/targets``).
"""

from __future__ import annotations

from fastapi import APIRouter

from jvmscope.api.v1 import discovery, plugins, targets

router = APIRouter()

router.include_router(
    discovery.router,
    prefix="/discovery",
    tags=["discovery"],
)
router.include_router(
    plugins.router,
    prefix="/discovery_plugins",
    tags=["discovery"],
)
router.include_router(
    targets.router,
    prefix="/targets",
    tags=["targets"],
)
