"""
Durable document store: one JSON document per user, system of record for content.

Every mutation is a read-modify-write of the whole document, executed inside
a per-user critical section and written back with the version token it read.
Reads are not serialized against writes.
"""

import logging
from typing import Callable, Optional

from ..core.config import Settings, get_settings
from ..core.errors import VersionConflict, bounded
from ..core.locks import KeyedLock
from ..core.storage import DocumentBackend, StoreCredentials
from ..schemas import DurableDocument, Memory
from .credentials import CredentialResolver

logger = logging.getLogger(__name__)

# Applies a change to the document in place; returns the commit message,
# or None when there is nothing to write.
Mutation = Callable[[DurableDocument], Optional[str]]


class DurableDocumentStore:
    def __init__(
        self,
        backend: DocumentBackend,
        resolver: CredentialResolver,
        settings: Optional[Settings] = None,
    ):
        self.backend = backend
        self.resolver = resolver
        self.settings = settings or get_settings()
        self.locks = KeyedLock()

    @property
    def path(self) -> str:
        return self.settings.memories_path

    async def _read(self, creds: StoreCredentials) -> tuple[DurableDocument, Optional[str]]:
        snapshot = await bounded(
            self.backend.get_document(creds, self.path),
            self.settings.durable_timeout,
            "read memories document",
        )
        if snapshot is None:
            return DurableDocument(), None
        return DurableDocument.from_json(snapshot.content), snapshot.version

    async def load(self, user_id: str) -> DurableDocument:
        """Current document; empty if the container or document does not exist yet."""
        creds = await self.resolver.resolve(user_id, create=False)
        if creds is None:
            return DurableDocument()
        doc, _ = await self._read(creds)
        return doc

    async def get(self, user_id: str, memory_id: str) -> Optional[Memory]:
        doc = await self.load(user_id)
        return doc.memories.get(memory_id)

    async def get_many(self, user_id: str, memory_ids: list[str]) -> dict[str, Memory]:
        """Fetch several records with one document read. Missing ids are omitted."""
        doc = await self.load(user_id)
        return {mid: doc.memories[mid] for mid in memory_ids if mid in doc.memories}

    async def list_ids(self, user_id: str) -> list[str]:
        doc = await self.load(user_id)
        return list(doc.memories.keys())

    async def list_all(self, user_id: str) -> list[Memory]:
        doc = await self.load(user_id)
        return list(doc.memories.values())

    async def put(self, user_id: str, memory: Memory) -> None:
        def apply(doc: DurableDocument) -> str:
            verb = "Update" if memory.id in doc.memories else "Add"
            doc.memories[memory.id] = memory
            return f"{verb} memory {memory.id}"

        await self._mutate(user_id, apply)

    async def update(
        self,
        user_id: str,
        memory_id: str,
        apply: Callable[[Memory], Memory],
    ) -> Optional[Memory]:
        """
        Replace a record with `apply(record)`, where `record` comes from the
        document read inside the critical section. Returns None without
        writing if the record is no longer there.
        """
        result: dict[str, Memory] = {}

        def mutate(doc: DurableDocument) -> Optional[str]:
            current = doc.memories.get(memory_id)
            if current is None:
                return None
            result["memory"] = doc.memories[memory_id] = apply(current)
            return f"Update memory {memory_id}"

        if not await self._mutate(user_id, mutate):
            return None
        return result["memory"]

    async def delete(self, user_id: str, memory_id: str) -> bool:
        """Remove a record. Returns False if it was not in the document."""
        def apply(doc: DurableDocument) -> Optional[str]:
            if doc.memories.pop(memory_id, None) is None:
                return None
            return f"Delete memory {memory_id}"

        return await self._mutate(user_id, apply)

    async def _mutate(self, user_id: str, mutation: Mutation) -> bool:
        async with self.locks.hold(user_id):
            creds = await self.resolver.resolve(user_id, create=True)
            attempts = self.settings.version_conflict_retries + 1
            attempt = 0

            while True:
                attempt += 1
                doc, version = await self._read(creds)
                message = mutation(doc)
                if message is None:
                    return False
                doc.touch()

                try:
                    new_version = await bounded(
                        self.backend.put_document(
                            creds, self.path, doc.to_json(), message, expected_version=version
                        ),
                        self.settings.durable_timeout,
                        "write memories document",
                    )
                except VersionConflict:
                    if attempt == attempts:
                        logger.error(
                            "Version conflict for user %s persisted after %d attempts", user_id, attempts
                        )
                        raise
                    logger.warning(
                        "Version conflict for user %s (attempt %d/%d), re-reading",
                        user_id, attempt, attempts,
                    )
                    continue

                logger.info(
                    "%s for user %s (%d total, version %s)",
                    message, user_id, doc.metadata.total_memories, new_version,
                )
                return True
