"""
Embedding rows keyed by memory id.

memory_id is indexed but neither unique nor a foreign key: the engine keeps
at most one row per memory itself, and duplicates or orphans left behind by
a crash must stay visible to the consistency check.
"""

from sqlalchemy import JSON, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from .base import TimestampedBase


class MemoryEmbedding(TimestampedBase):
    __tablename__ = "memory_embeddings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    memory_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    embedding: Mapped[list] = mapped_column(JSON, nullable=False)
    dimensions: Mapped[int] = mapped_column(Integer, nullable=False)
    model: Mapped[str] = mapped_column(String, nullable=False)
