"""
Feature flags. One file controls every external collaborator.

Set via environment variables (prefix FF_) or .env file.
When a flag is OFF, the engine uses a local fallback. Nothing crashes.
"""

from functools import lru_cache
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class FeatureFlags(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Durable store ────────────────────────────────────────────────
    use_github: bool = Field(default=True, alias="FF_USE_GITHUB")
    # ON  → memories.json lives in a private repo via the contents API.
    # OFF → memories.json saved under LOCAL_STORAGE_PATH/{owner}/{repo}/.

    # ── Embeddings ───────────────────────────────────────────────────
    use_remote_embeddings: bool = Field(default=True, alias="FF_USE_REMOTE_EMBEDDINGS")
    # ON  → OpenAI-compatible /embeddings. Needs EMBEDDING_API_KEY.
    # OFF → Deterministic hashed bag-of-words vectors. No network.

    # ── Categorization ───────────────────────────────────────────────
    use_llm_categorizer: bool = Field(default=True, alias="FF_USE_LLM_CATEGORIZER")
    # ON  → Chat model picks category + tags. Needs LLM_API_KEY.
    # OFF → Everything lands in FALLBACK_CATEGORY with no tags.


@lru_cache
def get_flags() -> FeatureFlags:
    return FeatureFlags()
