"""
Main API router. Mounts all sub-routers.
"""

from fastapi import APIRouter, Depends

from ..core.dependencies import get_user_id

router = APIRouter()


# ── Health (no auth) ─────────────────────────────────────────────────

@router.get("/health")
async def health():
    return {"status": "ok", "service": "memostore"}


# ── V1 routes ───────────────────────────────────────────────────────

from .memories import memories_router
from .maintenance import maintenance_router

router.include_router(memories_router, prefix="/v1")
# Maintenance is operator-facing; it still requires an identified caller
router.include_router(maintenance_router, prefix="/v1", dependencies=[Depends(get_user_id)])
