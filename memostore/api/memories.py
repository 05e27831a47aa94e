"""
Memories API.

GET    /v1/memories                - List metadata (index only)
POST   /v1/memories                - Create one memory
POST   /v1/memories/bulk           - Create many, partial success
POST   /v1/memories/search         - Semantic search
GET    /v1/memories/stats          - Counts by source / category
POST   /v1/memories/setup-store    - Provision the user's repository
GET    /v1/memories/{id}           - Full memory
PUT    /v1/memories/{id}           - Partial update
DELETE /v1/memories/{id}           - Delete from every store
GET    /v1/memories/{id}/similar   - Nearest neighbours
"""

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from ..core.dependencies import get_orchestrator, get_user_id
from ..schemas import (
    ListFilters,
    Memory,
    MemoryMetadata,
    MemoryUpdate,
    NewMemory,
    ScoredMemory,
    UsageStats,
)
from ..services.orchestrator import StorageOrchestrator

logger = logging.getLogger(__name__)

memories_router = APIRouter(prefix="/memories", tags=["memories"])


class MemoryOut(BaseModel):
    id: str
    content: str
    category: str
    source: str
    tags: str
    created_at: datetime
    updated_at: datetime

    @classmethod
    def of(cls, memory: Memory) -> "MemoryOut":
        return cls(**memory.model_dump(exclude={"embedding"}))


class MemoryList(BaseModel):
    memories: list[MemoryMetadata]
    total: int


class BulkCreateRequest(BaseModel):
    memories: list
    source: str = "import"


class BulkCreateResponse(BaseModel):
    memories: list[MemoryOut]
    processed: int
    skipped: int
    total: int


class SearchRequest(BaseModel):
    query: str
    limit: int = 5
    min_score: Optional[float] = None


class SearchHit(BaseModel):
    memory: MemoryOut
    score: float


class SearchResponse(BaseModel):
    query: str
    results: list[SearchHit]


class StoreLocation(BaseModel):
    owner: str
    repo: str


def _hits(scored: list[ScoredMemory]) -> list[SearchHit]:
    return [SearchHit(memory=MemoryOut.of(s.memory), score=s.score) for s in scored]


@memories_router.get("", response_model=MemoryList)
async def list_memories(
    category: Optional[str] = None,
    source: Optional[str] = None,
    tags: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
    user_id: str = Depends(get_user_id),
    engine: StorageOrchestrator = Depends(get_orchestrator),
):
    filters = ListFilters(
        category=category,
        source=source,
        tags=[t.strip() for t in tags.split(",") if t.strip()] if tags else [],
    )
    rows = await engine.list_memories(user_id, filters, limit=limit, offset=offset)
    total = await engine.count_memories(user_id, filters)
    return MemoryList(memories=rows, total=total)


@memories_router.post("", response_model=MemoryOut, status_code=201)
async def create_memory(
    body: NewMemory,
    user_id: str = Depends(get_user_id),
    engine: StorageOrchestrator = Depends(get_orchestrator),
):
    memory = await engine.create_memory(user_id, body)
    return MemoryOut.of(memory)


@memories_router.post("/bulk", response_model=BulkCreateResponse, status_code=201)
async def bulk_create(
    body: BulkCreateRequest,
    user_id: str = Depends(get_user_id),
    engine: StorageOrchestrator = Depends(get_orchestrator),
):
    result = await engine.bulk_create(user_id, body.memories, source=body.source)
    return BulkCreateResponse(
        memories=[MemoryOut.of(m) for m in result.memories],
        processed=result.processed,
        skipped=result.skipped,
        total=result.total,
    )


@memories_router.post("/search", response_model=SearchResponse)
async def search_memories(
    body: SearchRequest,
    user_id: str = Depends(get_user_id),
    engine: StorageOrchestrator = Depends(get_orchestrator),
):
    scored = await engine.search_memories(user_id, body.query, body.limit, body.min_score)
    return SearchResponse(query=body.query, results=_hits(scored))


@memories_router.get("/stats", response_model=UsageStats)
async def usage_stats(
    user_id: str = Depends(get_user_id),
    engine: StorageOrchestrator = Depends(get_orchestrator),
):
    return await engine.usage_stats(user_id)


@memories_router.post("/setup-store", response_model=StoreLocation)
async def setup_store(
    user_id: str = Depends(get_user_id),
    engine: StorageOrchestrator = Depends(get_orchestrator),
):
    creds = await engine.setup_store(user_id)
    return StoreLocation(owner=creds.owner, repo=creds.repo)


@memories_router.get("/{memory_id}", response_model=MemoryOut)
async def get_memory(
    memory_id: str,
    user_id: str = Depends(get_user_id),
    engine: StorageOrchestrator = Depends(get_orchestrator),
):
    memory = await engine.get_memory(user_id, memory_id)
    if memory is None:
        raise HTTPException(status_code=404, detail="Memory not found")
    return MemoryOut.of(memory)


@memories_router.put("/{memory_id}", response_model=MemoryOut)
async def update_memory(
    memory_id: str,
    body: MemoryUpdate,
    user_id: str = Depends(get_user_id),
    engine: StorageOrchestrator = Depends(get_orchestrator),
):
    memory = await engine.update_memory(user_id, memory_id, body)
    if memory is None:
        raise HTTPException(status_code=404, detail="Memory not found")
    return MemoryOut.of(memory)


@memories_router.delete("/{memory_id}")
async def delete_memory(
    memory_id: str,
    user_id: str = Depends(get_user_id),
    engine: StorageOrchestrator = Depends(get_orchestrator),
):
    if not await engine.delete_memory(user_id, memory_id):
        raise HTTPException(status_code=404, detail="Memory not found")
    return {"deleted": True, "id": memory_id}


@memories_router.get("/{memory_id}/similar", response_model=SearchResponse)
async def similar_memories(
    memory_id: str,
    limit: int = 5,
    threshold: Optional[float] = None,
    user_id: str = Depends(get_user_id),
    engine: StorageOrchestrator = Depends(get_orchestrator),
):
    scored = await engine.find_similar(user_id, memory_id, limit, threshold)
    if scored is None:
        raise HTTPException(status_code=404, detail="Memory not found")
    return SearchResponse(query=memory_id, results=_hits(scored))
