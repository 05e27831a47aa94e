"""
Users and the coordinates of their durable store.
"""

from typing import Optional

from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column

from .base import TimestampedBase, new_uuid


class User(TimestampedBase):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_uuid)
    login: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    access_token: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    # Cached after the container is first provisioned
    memory_repo_owner: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    memory_repo_name: Mapped[Optional[str]] = mapped_column(String, nullable=True)
