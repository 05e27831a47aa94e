"""
Vector index: embeddings keyed by memory id, ranked by cosine similarity.

Linear scan over the user's embeddings; no approximate index. Ties keep the
table's natural row order (ascending row id) because the sort is stable.
"""

import logging
import math
from typing import Optional, Sequence

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..core.database import get_session_factory
from ..core.errors import InvariantViolation, NotFound
from ..core.locks import KeyedLock
from ..models.embedding import MemoryEmbedding
from ..models.memory import MemoryRecord
from ..models.base import utcnow

logger = logging.getLogger(__name__)


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """
    dot(a, b) / (|a| * |b|), clamped to [-1, 1].
    Zero-magnitude or mismatched-length vectors score 0.
    """
    if len(a) != len(b):
        return 0.0

    dot = 0.0
    mag_a = 0.0
    mag_b = 0.0
    for x, y in zip(a, b):
        dot += x * y
        mag_a += x * x
        mag_b += y * y

    if mag_a == 0 or mag_b == 0:
        return 0.0

    score = dot / (math.sqrt(mag_a) * math.sqrt(mag_b))
    if math.isnan(score):
        return 0.0
    return max(-1.0, min(1.0, score))


def rank_candidates(
    query: Sequence[float],
    candidates: list[tuple[str, list[float]]],
    limit: int,
    min_score: float,
) -> list[tuple[str, float]]:
    scored = []
    for memory_id, vector in candidates:
        score = cosine_similarity(query, vector)
        if score >= min_score:
            scored.append((memory_id, score))
    # sorted() is stable, so equal scores stay in candidate order
    scored = sorted(scored, key=lambda item: item[1], reverse=True)
    return scored[:limit]


class VectorIndex:
    def __init__(self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None):
        self._sessions = session_factory or get_session_factory()
        # Check-then-insert must not interleave for one memory id
        self._upserts = KeyedLock()

    async def upsert(self, memory_id: str, embedding: list[float], model: str) -> None:
        """
        Insert or replace the single embedding row for `memory_id`.

        Raises NotFound if the memory has no metadata row, and
        InvariantViolation if more than one embedding row already exists.
        """
        async with self._upserts.hold(memory_id):
            await self._write(memory_id, embedding, model)

    async def _write(self, memory_id: str, embedding: list[float], model: str) -> None:
        async with self._sessions() as db:
            owner = await db.execute(
                select(func.count()).select_from(MemoryRecord).where(MemoryRecord.id == memory_id)
            )
            if owner.scalar_one() == 0:
                raise NotFound(f"cannot index embedding: memory {memory_id} is not in the metadata index")

            result = await db.execute(
                select(MemoryEmbedding).where(MemoryEmbedding.memory_id == memory_id)
            )
            rows = result.scalars().all()
            if len(rows) > 1:
                raise InvariantViolation(
                    f"memory {memory_id} has {len(rows)} embedding rows; run the consistency check"
                )

            if rows:
                row = rows[0]
                row.embedding = list(embedding)
                row.dimensions = len(embedding)
                row.model = model
                row.updated_at = utcnow()
            else:
                db.add(MemoryEmbedding(
                    memory_id=memory_id,
                    embedding=list(embedding),
                    dimensions=len(embedding),
                    model=model,
                ))
            await db.commit()
        logger.debug("Upserted %d-dim embedding for memory %s", len(embedding), memory_id)

    async def delete(self, memory_id: str) -> int:
        async with self._sessions() as db:
            result = await db.execute(
                delete(MemoryEmbedding).where(MemoryEmbedding.memory_id == memory_id)
            )
            await db.commit()
        return result.rowcount

    async def get(self, memory_id: str) -> Optional[list[float]]:
        async with self._sessions() as db:
            result = await db.execute(
                select(MemoryEmbedding.embedding).where(MemoryEmbedding.memory_id == memory_id)
            )
            vectors = result.scalars().all()
        if len(vectors) > 1:
            raise InvariantViolation(f"memory {memory_id} has {len(vectors)} embedding rows")
        return vectors[0] if vectors else None

    async def _user_candidates(self, user_id: str) -> list[tuple[str, list[float]]]:
        async with self._sessions() as db:
            result = await db.execute(
                select(MemoryEmbedding.memory_id, MemoryEmbedding.embedding)
                .join(MemoryRecord, MemoryRecord.id == MemoryEmbedding.memory_id)
                .where(MemoryRecord.user_id == user_id)
                .order_by(MemoryEmbedding.id)
            )
            return [(mid, vec) for mid, vec in result.all()]

    async def rank(
        self,
        user_id: str,
        query_embedding: Sequence[float],
        limit: int = 10,
        min_score: float = 0.0,
    ) -> list[tuple[str, float]]:
        """Score every embedding owned by `user_id`; best first."""
        candidates = await self._user_candidates(user_id)
        ranked = rank_candidates(query_embedding, candidates, limit, min_score)
        logger.debug("Ranked %d/%d embeddings for user %s", len(ranked), len(candidates), user_id)
        return ranked

    async def neighbors(
        self,
        memory_id: str,
        user_id: str,
        limit: int = 5,
        min_score: float = 0.3,
    ) -> list[tuple[str, float]]:
        """Memories most similar to `memory_id`, excluding itself."""
        candidates = await self._user_candidates(user_id)
        target = next((vec for mid, vec in candidates if mid == memory_id), None)
        if target is None:
            return []
        others = [(mid, vec) for mid, vec in candidates if mid != memory_id]
        return rank_candidates(target, others, limit, min_score)

    # ── Maintenance helpers ──────────────────────────────────────────

    async def row_counts(self) -> dict[str, int]:
        """Memory id → number of embedding rows referencing it."""
        async with self._sessions() as db:
            result = await db.execute(
                select(MemoryEmbedding.memory_id, func.count())
                .group_by(MemoryEmbedding.memory_id)
            )
            return {mid: n for mid, n in result.all()}
