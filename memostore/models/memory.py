"""
Memory metadata rows. Content lives in the durable store; this table only
mirrors what listing and filtering need.
"""

from sqlalchemy import Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from .base import TimestampedBase


class MemoryRecord(TimestampedBase):
    __tablename__ = "memories"
    __table_args__ = (
        Index("ix_memories_user_created", "user_id", "created_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    user_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    category: Mapped[str] = mapped_column(String, nullable=False, index=True)
    source: Mapped[str] = mapped_column(String, nullable=False, default="manual")
    tags: Mapped[str] = mapped_column(Text, nullable=False, default="")
