"""
Metadata index: relational mirror of memory metadata for listing and filtering.

Pure CRUD. Keeping it in step with the durable store is the orchestrator's job.
"""

import logging
from typing import Optional

from sqlalchemy import delete, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..core.database import get_session_factory
from ..models.memory import MemoryRecord
from ..schemas import ListFilters, MemoryMetadata, UsageStats

logger = logging.getLogger(__name__)


def _apply_filters(stmt, user_id: str, filters: Optional[ListFilters]):
    stmt = stmt.where(MemoryRecord.user_id == user_id)
    if not filters:
        return stmt
    if filters.category:
        stmt = stmt.where(MemoryRecord.category == filters.category)
    if filters.source:
        stmt = stmt.where(MemoryRecord.source == filters.source)
    if filters.tags:
        # Substring match against the comma-joined tags column, not set membership
        stmt = stmt.where(or_(*[MemoryRecord.tags.contains(tag, autoescape=True) for tag in filters.tags]))
    return stmt


class MetadataIndex:
    def __init__(self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None):
        self._sessions = session_factory or get_session_factory()

    async def insert(self, row: MemoryMetadata) -> None:
        async with self._sessions() as db:
            db.add(MemoryRecord(**row.model_dump()))
            await db.commit()
        logger.debug("Indexed metadata for memory %s (user=%s)", row.id, row.user_id)

    async def update(self, row: MemoryMetadata) -> bool:
        """Overwrite the mutable columns. Returns False if the row is missing."""
        async with self._sessions() as db:
            record = await db.get(MemoryRecord, row.id)
            if record is None or record.user_id != row.user_id:
                return False
            record.category = row.category
            record.source = row.source
            record.tags = row.tags
            record.updated_at = row.updated_at
            await db.commit()
        return True

    async def get(self, user_id: str, memory_id: str) -> Optional[MemoryMetadata]:
        async with self._sessions() as db:
            result = await db.execute(
                select(MemoryRecord).where(
                    MemoryRecord.id == memory_id,
                    MemoryRecord.user_id == user_id,
                )
            )
            record = result.scalar_one_or_none()
        return MemoryMetadata.model_validate(record) if record else None

    async def exists(self, memory_id: str) -> bool:
        async with self._sessions() as db:
            result = await db.execute(
                select(func.count()).select_from(MemoryRecord).where(MemoryRecord.id == memory_id)
            )
            return result.scalar_one() > 0

    async def delete(self, memory_id: str, user_id: Optional[str] = None) -> bool:
        stmt = delete(MemoryRecord).where(MemoryRecord.id == memory_id)
        if user_id is not None:
            stmt = stmt.where(MemoryRecord.user_id == user_id)
        async with self._sessions() as db:
            result = await db.execute(stmt)
            await db.commit()
        return result.rowcount > 0

    async def list_rows(
        self,
        user_id: str,
        filters: Optional[ListFilters] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[MemoryMetadata]:
        stmt = _apply_filters(select(MemoryRecord), user_id, filters)
        stmt = stmt.order_by(MemoryRecord.created_at.desc()).limit(limit).offset(offset)
        async with self._sessions() as db:
            result = await db.execute(stmt)
            records = result.scalars().all()
        return [MemoryMetadata.model_validate(r) for r in records]

    async def count(self, user_id: str, filters: Optional[ListFilters] = None) -> int:
        stmt = _apply_filters(select(func.count()).select_from(MemoryRecord), user_id, filters)
        async with self._sessions() as db:
            result = await db.execute(stmt)
            return result.scalar_one()

    async def ids(self, user_id: Optional[str] = None) -> dict[str, str]:
        """Map of memory id → owning user id, for one user or everyone."""
        stmt = select(MemoryRecord.id, MemoryRecord.user_id)
        if user_id is not None:
            stmt = stmt.where(MemoryRecord.user_id == user_id)
        async with self._sessions() as db:
            result = await db.execute(stmt)
            return {mid: uid for mid, uid in result.all()}

    async def stats(self, user_id: str) -> UsageStats:
        stats = UsageStats()
        async with self._sessions() as db:
            for column, target in (
                (MemoryRecord.source, stats.by_source),
                (MemoryRecord.category, stats.by_category),
            ):
                result = await db.execute(
                    select(column, func.count())
                    .where(MemoryRecord.user_id == user_id)
                    .group_by(column)
                )
                for key, n in result.all():
                    target[key] = n
        stats.total_memories = sum(stats.by_source.values())
        return stats
