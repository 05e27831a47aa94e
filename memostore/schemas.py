"""
Pydantic shapes shared by the engine and the API.

The durable document is written with camelCase keys (createdAt, totalMemories)
so the JSON stored in the user's repository reads the same regardless of
which client last touched it.
"""

from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

DOCUMENT_VERSION = "1.0"
DOCUMENT_DESCRIPTION = "memostore conversation memories storage"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Memory(CamelModel):
    """A full memory record as held in the durable document."""

    id: str
    content: str
    category: str
    source: str = "manual"
    tags: str = ""
    embedding: Optional[list[float]] = None
    created_at: datetime
    updated_at: datetime


class DocumentMetadata(CamelModel):
    total_memories: int = 0
    last_updated: datetime = Field(default_factory=utcnow)
    description: str = DOCUMENT_DESCRIPTION


class DurableDocument(CamelModel):
    version: str = DOCUMENT_VERSION
    created_at: datetime = Field(default_factory=utcnow)
    memories: dict[str, Memory] = Field(default_factory=dict)
    metadata: DocumentMetadata = Field(default_factory=DocumentMetadata)

    def touch(self) -> None:
        """Recompute the summary block after the memories map changed."""
        self.metadata.total_memories = len(self.memories)
        self.metadata.last_updated = utcnow()

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, indent=2)

    @classmethod
    def from_json(cls, raw: str) -> "DurableDocument":
        return cls.model_validate_json(raw)


class MemoryMetadata(BaseModel):
    """One MetadataIndex row."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    category: str
    source: str
    tags: str
    created_at: datetime
    updated_at: datetime


class NewMemory(BaseModel):
    content: str
    category: Optional[str] = None
    source: str = "manual"
    tags: Optional[str] = None


class MemoryUpdate(BaseModel):
    """
    Partial update. A field counts as supplied only if it appears in
    model_fields_set, so `tags=None` (clear) differs from omitting tags.
    """

    content: Optional[str] = None
    category: Optional[str] = None
    source: Optional[str] = None
    tags: Optional[str] = None

    def supplied(self, field: str) -> bool:
        return field in self.model_fields_set


class ListFilters(BaseModel):
    category: Optional[str] = None
    source: Optional[str] = None
    # Substring match: a row qualifies if its tags contain any of these
    tags: list[str] = Field(default_factory=list)


class ScoredMemory(BaseModel):
    memory: Memory
    score: float


class BulkResult(BaseModel):
    memories: list[Memory] = Field(default_factory=list)
    processed: int = 0
    skipped: int = 0
    total: int = 0


class UsageStats(BaseModel):
    total_memories: int = 0
    by_source: dict[str, int] = Field(default_factory=dict)
    by_category: dict[str, int] = Field(default_factory=dict)
