"""
Embedding generation. Remote OpenAI-compatible endpoint OR local hashing.
Controlled by FF_USE_REMOTE_EMBEDDINGS flag.

Both raise ValueError for empty input and UpstreamUnavailable when the
model cannot be reached, so callers can tell the two apart.
"""

import hashlib
import logging
import math
import re
from abc import ABC, abstractmethod
from typing import Optional

from ..core.config import get_settings
from ..core.errors import UpstreamUnavailable
from ..core.flags import get_flags
from .llm import post_json

logger = logging.getLogger(__name__)

MAX_CONTENT_LENGTH = 100_000


def _validate(text: str) -> None:
    if not text or not text.strip():
        raise ValueError("Cannot embed empty text")
    if len(text) > MAX_CONTENT_LENGTH:
        raise ValueError(f"Content too long: {len(text)} chars (max {MAX_CONTENT_LENGTH})")


class Embedder(ABC):
    model: str

    @abstractmethod
    async def generate(self, text: str) -> list[float]:
        ...


class RemoteEmbedder(Embedder):
    def __init__(self, model: Optional[str] = None, api_key: Optional[str] = None):
        settings = get_settings()
        self.model = model or settings.embedding_model
        self.api_key = api_key or settings.embedding_api_key
        self.base_url = settings.embedding_base_url.rstrip("/")
        if not self.api_key:
            raise ValueError(
                "Embedding API key required. Set EMBEDDING_API_KEY "
                "or turn FF_USE_REMOTE_EMBEDDINGS off."
            )

    async def generate(self, text: str) -> list[float]:
        _validate(text)
        data = await post_json(
            f"{self.base_url}/embeddings",
            self.api_key,
            {"model": self.model, "input": text},
        )
        try:
            embedding = data["data"][0]["embedding"]
        except (KeyError, IndexError, TypeError) as e:
            raise UpstreamUnavailable(f"Embedding API returned an unexpected body: {e!r}") from e
        if not isinstance(embedding, list) or not embedding:
            raise UpstreamUnavailable("Embedding API returned an empty embedding")
        return embedding


_WORD = re.compile(r"\w+", re.UNICODE)


class HashingEmbedder(Embedder):
    """
    Bag-of-words hashed into a fixed number of buckets, L2-normalised.
    Deterministic across processes (md5, not hash()).
    """

    def __init__(self, dimensions: Optional[int] = None):
        self.dimensions = dimensions or get_settings().hashing_dimensions
        self.model = f"hashing-bow-{self.dimensions}"

    def _bucket(self, word: str) -> int:
        digest = hashlib.md5(word.encode("utf-8")).digest()
        return int.from_bytes(digest[:4], "big") % self.dimensions

    async def generate(self, text: str) -> list[float]:
        _validate(text)
        vector = [0.0] * self.dimensions
        for word in _WORD.findall(text.lower()):
            if len(word) > 2:
                vector[self._bucket(word)] += 1.0

        magnitude = math.sqrt(sum(v * v for v in vector))
        if magnitude > 0:
            vector = [v / magnitude for v in vector]
        return vector


def get_embedder() -> Embedder:
    """Return the active embedder based on feature flags."""
    flags = get_flags()
    if flags.use_remote_embeddings:
        return RemoteEmbedder()
    logger.info("Remote embeddings disabled; using local hashing embedder")
    return HashingEmbedder()
