"""
Storage orchestrator: the façade callers use.

Writes go durable store first, then metadata index, then vector index.
Cross-store atomicity is not attempted: a failure after the durable write
is raised to the caller and the leftover divergence is the reconciler's job.
"""

import asyncio
import logging
import uuid
from collections import OrderedDict
from typing import Optional

from ..core.config import Settings, get_settings
from ..core.errors import MemoryStoreError, NotFound, bounded
from ..core.locks import KeyedLock
from ..core.storage import StoreCredentials
from ..schemas import (
    BulkResult,
    ListFilters,
    Memory,
    MemoryMetadata,
    MemoryUpdate,
    NewMemory,
    ScoredMemory,
    UsageStats,
    utcnow,
)
from .categorizer import DEFAULT_CATEGORIES, Categorizer
from .document_store import DurableDocumentStore
from .embeddings import Embedder
from .metadata_index import MetadataIndex
from .reconciler import ConsistencyReconciler, ConsistencyReport
from .vector_index import VectorIndex

logger = logging.getLogger(__name__)


def new_memory_id() -> str:
    return f"mem_{uuid.uuid4().hex}"


def _metadata_row(user_id: str, memory: Memory) -> MemoryMetadata:
    return MemoryMetadata(
        id=memory.id,
        user_id=user_id,
        category=memory.category,
        source=memory.source,
        tags=memory.tags,
        created_at=memory.created_at,
        updated_at=memory.updated_at,
    )


class StorageOrchestrator:
    def __init__(
        self,
        store: DurableDocumentStore,
        metadata: MetadataIndex,
        vectors: VectorIndex,
        embedder: Embedder,
        categorizer: Categorizer,
        settings: Optional[Settings] = None,
        vocabulary: Optional[list[str]] = None,
    ):
        self.store = store
        self.metadata = metadata
        self.vectors = vectors
        self.embedder = embedder
        self.categorizer = categorizer
        self.settings = settings or get_settings()
        self.vocabulary = vocabulary or list(DEFAULT_CATEGORIES)
        self.reconciler = ConsistencyReconciler(store, metadata, vectors, embedder, self.settings)
        # Recently written records, for read-your-writes
        self._written: OrderedDict[tuple[str, str], Memory] = OrderedDict()
        # Durable write and index writes of one update land together
        self._updates = KeyedLock()

    # ── Read-your-writes cache ───────────────────────────────────────

    def _remember(self, user_id: str, memory: Memory) -> None:
        key = (user_id, memory.id)
        self._written[key] = memory
        self._written.move_to_end(key)
        while len(self._written) > self.settings.write_cache_size:
            self._written.popitem(last=False)

    def _forget(self, user_id: str, memory_id: str) -> None:
        self._written.pop((user_id, memory_id), None)

    def _freshest(self, user_id: str, memory_id: str, durable: Optional[Memory]) -> Optional[Memory]:
        cached = self._written.get((user_id, memory_id))
        if durable is None:
            return cached
        if cached is not None and cached.updated_at > durable.updated_at:
            return cached
        return durable

    # ── External collaborators ───────────────────────────────────────

    async def _embed(self, text: str) -> list[float]:
        return await bounded(
            self.embedder.generate(text), self.settings.embedding_timeout, "generate embedding"
        )

    async def _categorize(self, text: str) -> str:
        fallback = self.settings.fallback_category
        try:
            result = await bounded(
                self.categorizer.categorize(text, self.vocabulary),
                self.settings.categorize_timeout,
                "categorize memory",
            )
        except (MemoryStoreError, ValueError) as e:
            logger.warning("Categorization failed, using %r: %s", fallback, e)
            return fallback
        if result.category not in self.vocabulary:
            logger.warning("Categorizer returned %r outside vocabulary, using %r", result.category, fallback)
            return fallback
        return result.category

    async def _generate_tags(self, text: str) -> str:
        try:
            tags = await bounded(
                self.categorizer.generate_tags(text),
                self.settings.categorize_timeout,
                "generate tags",
            )
        except (MemoryStoreError, ValueError) as e:
            logger.warning("Tag generation failed, storing no tags: %s", e)
            return ""
        return ", ".join(tags)

    # ── Mutations ────────────────────────────────────────────────────

    async def create_memory(self, user_id: str, new: NewMemory) -> Memory:
        """
        Embed, write the full record durably, then index it.

        Omitted category/tags are generated (best effort). If the durable
        write fails nothing is indexed; if indexing fails the error is raised
        and the record stays durable until the reconciler catches up.
        """
        if not new.content or not new.content.strip():
            raise ValueError("content is required")

        category = new.category if new.category is not None else await self._categorize(new.content)
        tags = new.tags if new.tags is not None else await self._generate_tags(new.content)
        embedding = await self._embed(new.content)

        now = utcnow()
        memory = Memory(
            id=new_memory_id(),
            content=new.content,
            category=category,
            source=new.source,
            tags=tags,
            embedding=embedding,
            created_at=now,
            updated_at=now,
        )

        await self.store.put(user_id, memory)
        self._remember(user_id, memory)

        try:
            await self.metadata.insert(_metadata_row(user_id, memory))
            await self.vectors.upsert(memory.id, embedding, self.embedder.model)
        except Exception:
            logger.error("Memory %s is durable but not fully indexed (user=%s)", memory.id, user_id)
            raise

        logger.info("Created memory %s for user %s (category=%s)", memory.id, user_id, category)
        return memory

    async def update_memory(self, user_id: str, memory_id: str, update: MemoryUpdate) -> Optional[Memory]:
        """
        Apply only the supplied fields. Re-embeds only when content changed.

        The embedding is computed first. Fields are merged into the record
        as read inside the durable write; if that record is gone by then,
        nothing is written and None is returned.
        """
        current = await self.get_memory(user_id, memory_id)
        if current is None:
            return None

        changes = {}
        if update.supplied("content"):
            if not update.content or not update.content.strip():
                raise ValueError("content cannot be cleared")
            changes["content"] = update.content
        if update.supplied("category"):
            if update.category is None:
                raise ValueError("category cannot be cleared")
            changes["category"] = update.category
        if update.supplied("source"):
            changes["source"] = update.source or ""
        if update.supplied("tags"):
            changes["tags"] = update.tags or ""

        # Embedding of changes["content"]; current.embedding already is one when unchanged
        new_embedding = current.embedding
        if "content" in changes and (changes["content"] != current.content or new_embedding is None):
            new_embedding = await self._embed(changes["content"])

        reembedded = {"value": False}

        def apply(record: Memory) -> Memory:
            merged = dict(changes, updated_at=utcnow())
            reembedded["value"] = "content" in changes and changes["content"] != record.content
            if reembedded["value"]:
                merged["embedding"] = new_embedding
            return record.model_copy(update=merged)

        async with self._updates.hold(memory_id):
            updated = await self.store.update(user_id, memory_id, apply)
            if updated is None:
                logger.info("Memory %s was deleted before its update was written (user=%s)", memory_id, user_id)
                return None
            self._remember(user_id, updated)

            if not await self.metadata.update(_metadata_row(user_id, updated)):
                logger.warning("Metadata row for memory %s vanished during update", memory_id)
            elif reembedded["value"]:
                try:
                    await self.vectors.upsert(memory_id, updated.embedding, self.embedder.model)
                except NotFound:
                    logger.warning("Memory %s was deleted while its embedding was being replaced", memory_id)

        logger.info(
            "Updated memory %s for user %s (fields=%s)",
            memory_id, user_id, ",".join(sorted(changes)),
        )
        return updated

    async def delete_memory(self, user_id: str, memory_id: str) -> bool:
        """Remove from durable store, then metadata, then vectors."""
        if await self.metadata.get(user_id, memory_id) is None:
            return False

        if not await self.store.delete(user_id, memory_id):
            logger.warning("Memory %s was already absent from the durable store", memory_id)
        self._forget(user_id, memory_id)
        await self.metadata.delete(memory_id, user_id)
        await self.vectors.delete(memory_id)

        logger.info("Deleted memory %s for user %s", memory_id, user_id)
        return True

    async def bulk_create(self, user_id: str, contents: list, source: str = "import") -> BulkResult:
        """
        Create many memories in batches. Enrichment is best effort and
        individual failures are counted as skipped, never fatal to the batch.
        """
        if not contents:
            raise ValueError("memories list cannot be empty")

        result = BulkResult(total=len(contents))
        batch_size = max(1, self.settings.bulk_batch_size)

        for start in range(0, len(contents), batch_size):
            batch = contents[start:start + batch_size]
            valid = [c for c in batch if isinstance(c, str) and c.strip()]
            result.skipped += len(batch) - len(valid)

            outcomes = await asyncio.gather(
                *[self.create_memory(user_id, NewMemory(content=c, source=source)) for c in valid],
                return_exceptions=True,
            )
            for outcome in outcomes:
                if isinstance(outcome, Exception):
                    logger.warning("Bulk create skipped an item for user %s: %s", user_id, outcome)
                    result.skipped += 1
                else:
                    result.memories.append(outcome)
                    result.processed += 1

        logger.info(
            "Bulk create for user %s: %d processed, %d skipped of %d",
            user_id, result.processed, result.skipped, result.total,
        )
        return result

    # ── Reads ────────────────────────────────────────────────────────

    async def get_memory(self, user_id: str, memory_id: str) -> Optional[Memory]:
        """Ownership is checked against the metadata index before touching the durable store."""
        if await self.metadata.get(user_id, memory_id) is None:
            return None
        try:
            durable = await self.store.get(user_id, memory_id)
        except NotFound:
            durable = None
        return self._freshest(user_id, memory_id, durable)

    async def _hydrate(self, user_id: str, ranked: list[tuple[str, float]]) -> list[ScoredMemory]:
        """Attach full content to ranked ids, preserving order and dropping misses."""
        if not ranked:
            return []
        try:
            records = await self.store.get_many(user_id, [mid for mid, _ in ranked])
        except MemoryStoreError as e:
            logger.warning("Durable fetch for ranked results failed (user=%s): %s", user_id, e)
            records = {}

        hits = []
        for memory_id, score in ranked:
            memory = self._freshest(user_id, memory_id, records.get(memory_id))
            if memory is None:
                logger.warning("Dropping ranked memory %s: not in durable store", memory_id)
                continue
            hits.append(ScoredMemory(memory=memory, score=score))
        return hits

    async def search_memories(
        self,
        user_id: str,
        query: str,
        limit: int = 10,
        min_score: Optional[float] = None,
    ) -> list[ScoredMemory]:
        threshold = self.settings.search_min_score if min_score is None else min_score
        query_embedding = await self._embed(query)
        ranked = await self.vectors.rank(user_id, query_embedding, limit, threshold)
        return await self._hydrate(user_id, ranked)

    async def find_similar(
        self,
        user_id: str,
        memory_id: str,
        limit: int = 5,
        min_score: Optional[float] = None,
    ) -> Optional[list[ScoredMemory]]:
        """Neighbours of an existing memory. None if the memory is not the user's."""
        if await self.metadata.get(user_id, memory_id) is None:
            return None
        threshold = self.settings.similar_min_score if min_score is None else min_score
        ranked = await self.vectors.neighbors(memory_id, user_id, limit, threshold)
        return await self._hydrate(user_id, ranked)

    async def list_memories(
        self,
        user_id: str,
        filters: Optional[ListFilters] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> list[MemoryMetadata]:
        """Metadata only; never reads the durable store."""
        return await self.metadata.list_rows(
            user_id, filters, self.settings.default_list_limit if limit is None else limit, offset
        )

    async def count_memories(self, user_id: str, filters: Optional[ListFilters] = None) -> int:
        return await self.metadata.count(user_id, filters)

    async def usage_stats(self, user_id: str) -> UsageStats:
        return await self.metadata.stats(user_id)

    async def setup_store(self, user_id: str) -> StoreCredentials:
        return await self.store.resolver.setup_store(user_id)

    # ── Maintenance ──────────────────────────────────────────────────

    async def run_consistency_check(self, user_id: Optional[str] = None) -> ConsistencyReport:
        return await self.reconciler.check(user_id)

    async def run_consistency_repair(self, user_id: Optional[str] = None) -> ConsistencyReport:
        return await self.reconciler.repair(user_id)
