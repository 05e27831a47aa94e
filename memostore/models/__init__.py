"""
All database models. Imported here so Base.metadata sees them for create_all().
"""

from .base import TimestampedBase
from .user import User
from .memory import MemoryRecord
from .embedding import MemoryEmbedding

__all__ = [
    "TimestampedBase",
    "User",
    "MemoryRecord",
    "MemoryEmbedding",
]
