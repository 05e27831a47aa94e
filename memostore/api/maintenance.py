"""
Maintenance API. Consistency diagnosis and repair across the three stores.

GET  /v1/maintenance/consistency         - Report only
POST /v1/maintenance/consistency/repair  - Report + repair counts
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends

from ..core.dependencies import get_orchestrator
from ..services.orchestrator import StorageOrchestrator
from ..services.reconciler import ConsistencyReport

logger = logging.getLogger(__name__)

maintenance_router = APIRouter(prefix="/maintenance", tags=["maintenance"])


@maintenance_router.get("/consistency", response_model=ConsistencyReport)
async def consistency_check(
    user_id: Optional[str] = None,
    engine: StorageOrchestrator = Depends(get_orchestrator),
):
    return await engine.run_consistency_check(user_id)


@maintenance_router.post("/consistency/repair", response_model=ConsistencyReport)
async def consistency_repair(
    user_id: Optional[str] = None,
    engine: StorageOrchestrator = Depends(get_orchestrator),
):
    logger.info("Consistency repair requested (user=%s)", user_id or "*")
    return await engine.run_consistency_repair(user_id)
