"""
Consistency reconciler: detects and repairs divergence between the durable
store, the metadata index and the vector index.

Maintenance only; never called on the request path. Duplicate embedding rows
are reported, never resolved automatically.

Scope: with a user id the user's durable document is compared as well.
Orphaned embeddings have no owner, so they are always detected globally.
"""

import logging
from typing import Optional

from pydantic import BaseModel, Field

from ..core.config import Settings, get_settings
from ..core.errors import MemoryStoreError, bounded
from ..schemas import DurableDocument, MemoryMetadata
from .document_store import DurableDocumentStore
from .embeddings import Embedder
from .metadata_index import MetadataIndex
from .vector_index import VectorIndex

logger = logging.getLogger(__name__)


class RepairCounts(BaseModel):
    orphaned_embeddings_deleted: int = 0
    orphaned_rows_deleted: int = 0
    rows_restored: int = 0
    embeddings_created: int = 0
    embeddings_failed: int = 0


class ConsistencyReport(BaseModel):
    user_id: Optional[str] = None
    total_memories: int = 0
    total_embeddings: int = 0
    memories_without_embeddings: int = 0
    embeddings_without_memories: int = 0
    duplicate_embeddings: int = 0
    duplicate_memory_ids: list[str] = Field(default_factory=list)
    # Only populated when scoped to a user
    index_rows_without_document: Optional[int] = None
    document_records_without_index: Optional[int] = None
    repairs: Optional[RepairCounts] = None

    @property
    def consistent(self) -> bool:
        return not (
            self.memories_without_embeddings
            or self.embeddings_without_memories
            or self.duplicate_embeddings
            or self.index_rows_without_document
            or self.document_records_without_index
        )


class _Snapshot:
    """Ids gathered from each store in one pass."""

    def __init__(self, owners: dict[str, str], row_counts: dict[str, int], document: Optional[DurableDocument]):
        self.owners = owners
        self.row_counts = row_counts
        self.document = document

    @property
    def orphan_embeddings(self) -> list[str]:
        return [mid for mid in self.row_counts if mid not in self.owners]

    @property
    def missing_embeddings(self) -> list[str]:
        return [mid for mid in self.owners if mid not in self.row_counts]

    @property
    def duplicates(self) -> list[str]:
        return [mid for mid, n in self.row_counts.items() if n > 1 and mid in self.owners]

    @property
    def rows_without_document(self) -> list[str]:
        if self.document is None:
            return []
        return [mid for mid in self.owners if mid not in self.document.memories]

    @property
    def records_without_index(self) -> list[str]:
        if self.document is None:
            return []
        return [mid for mid in self.document.memories if mid not in self.owners]


class ConsistencyReconciler:
    def __init__(
        self,
        store: DurableDocumentStore,
        metadata: MetadataIndex,
        vectors: VectorIndex,
        embedder: Embedder,
        settings: Optional[Settings] = None,
    ):
        self.store = store
        self.metadata = metadata
        self.vectors = vectors
        self.embedder = embedder
        self.settings = settings or get_settings()

    async def _snapshot(self, user_id: Optional[str]) -> _Snapshot:
        owners = await self.metadata.ids(user_id)
        all_counts = await self.vectors.row_counts()
        # Embeddings of other users' memories are out of scope; orphans never are
        all_owners = owners if user_id is None else await self.metadata.ids()
        row_counts = {
            mid: n for mid, n in all_counts.items()
            if mid in owners or mid not in all_owners
        }
        document = await self.store.load(user_id) if user_id is not None else None
        return _Snapshot(owners, row_counts, document)

    def _report(self, user_id: Optional[str], snap: _Snapshot) -> ConsistencyReport:
        duplicates = snap.duplicates
        if duplicates:
            logger.error(
                "Invariant violation: %d memories have duplicate embedding rows: %s",
                len(duplicates), ", ".join(duplicates[:20]),
            )
        report = ConsistencyReport(
            user_id=user_id,
            total_memories=len(snap.owners),
            total_embeddings=sum(n for mid, n in snap.row_counts.items() if mid in snap.owners),
            memories_without_embeddings=len(snap.missing_embeddings),
            embeddings_without_memories=len(snap.orphan_embeddings),
            duplicate_embeddings=len(duplicates),
            duplicate_memory_ids=duplicates,
        )
        if snap.document is not None:
            report.index_rows_without_document = len(snap.rows_without_document)
            report.document_records_without_index = len(snap.records_without_index)
        return report

    async def check(self, user_id: Optional[str] = None) -> ConsistencyReport:
        """Diagnose only; nothing is modified."""
        report = self._report(user_id, await self._snapshot(user_id))
        logger.info(
            "Consistency check (user=%s): %d memories, %d embeddings, %d missing, %d orphaned, %d duplicated",
            user_id or "*", report.total_memories, report.total_embeddings,
            report.memories_without_embeddings, report.embeddings_without_memories,
            report.duplicate_embeddings,
        )
        return report

    async def repair(self, user_id: Optional[str] = None) -> ConsistencyReport:
        """Diagnose, then fix everything except duplicates. Counts reflect work actually done."""
        snap = await self._snapshot(user_id)
        report = self._report(user_id, snap)
        counts = RepairCounts()

        # Restore rows first so their embeddings are no longer orphans
        if snap.document is not None:
            await self._repair_against_document(user_id, snap, counts)
            snap = await self._snapshot(user_id)

        for memory_id in snap.orphan_embeddings:
            counts.orphaned_embeddings_deleted += await self.vectors.delete(memory_id)

        await self._restore_embeddings(snap, counts)

        report.repairs = counts
        logger.info("Consistency repair (user=%s): %s", user_id or "*", counts.model_dump())
        return report

    async def _repair_against_document(self, user_id: str, snap: _Snapshot, counts: RepairCounts) -> None:
        # Durable store wins: index rows it does not know about are stale
        for memory_id in snap.rows_without_document:
            await self.metadata.delete(memory_id, user_id)
            await self.vectors.delete(memory_id)
            counts.orphaned_rows_deleted += 1

        for memory_id in snap.records_without_index:
            record = snap.document.memories[memory_id]
            await self.metadata.insert(MemoryMetadata(
                id=record.id,
                user_id=user_id,
                category=record.category,
                source=record.source,
                tags=record.tags,
                created_at=record.created_at,
                updated_at=record.updated_at,
            ))
            counts.rows_restored += 1

    async def _restore_embeddings(self, snap: _Snapshot, counts: RepairCounts) -> None:
        missing = snap.missing_embeddings
        if not missing:
            return

        by_user: dict[str, list[str]] = {}
        for memory_id in missing:
            by_user.setdefault(snap.owners[memory_id], []).append(memory_id)

        for owner, memory_ids in by_user.items():
            try:
                document = snap.document if snap.document is not None else await self.store.load(owner)
            except MemoryStoreError as e:
                logger.warning("Cannot load durable document for user %s: %s", owner, e)
                counts.embeddings_failed += len(memory_ids)
                continue

            for memory_id in memory_ids:
                record = document.memories.get(memory_id)
                if record is None:
                    logger.warning("Memory %s has no durable record; cannot re-derive its embedding", memory_id)
                    counts.embeddings_failed += 1
                    continue
                try:
                    embedding = record.embedding or await bounded(
                        self.embedder.generate(record.content),
                        self.settings.embedding_timeout,
                        "generate embedding",
                    )
                    await self.vectors.upsert(memory_id, embedding, self.embedder.model)
                except (MemoryStoreError, ValueError) as e:
                    logger.warning("Could not restore embedding for memory %s: %s", memory_id, e)
                    counts.embeddings_failed += 1
                    continue
                counts.embeddings_created += 1
