"""
Error kinds raised by the engine.

Backends translate transport-level failures (HTTP status codes, timeouts)
into these types exactly once; callers only ever see the hierarchy below.
"""

import asyncio
import logging
from typing import Awaitable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class MemoryStoreError(Exception):
    """Base class for all engine errors."""


class NotFound(MemoryStoreError):
    """Memory, user, container or document absent."""


class Unauthorized(MemoryStoreError):
    """Credential missing or rejected by the durable-store API."""


class VersionConflict(MemoryStoreError):
    """Durable write rejected because the document changed underneath it."""


class UpstreamUnavailable(MemoryStoreError):
    """Durable store or an AI collaborator is unreachable or timed out."""


class InvariantViolation(MemoryStoreError):
    """Structural inconsistency between stores (duplicate or orphaned rows)."""


async def bounded(aw: Awaitable[T], timeout: float, what: str) -> T:
    """Await `aw` for at most `timeout` seconds, raising UpstreamUnavailable on expiry."""
    try:
        return await asyncio.wait_for(aw, timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning("%s timed out after %.1fs", what, timeout)
        raise UpstreamUnavailable(f"{what} timed out after {timeout:.1f}s") from None
