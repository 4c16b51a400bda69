from __future__ import annotations

from fastapi import APIRouter

from featherpanel.api.admin import addons, snapshots

router = APIRouter()
router.include_router(addons.router)
router.include_router(snapshots.router)

__all__ = ["router"]
