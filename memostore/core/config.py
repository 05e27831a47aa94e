"""
Central configuration. All endpoints, credentials and tuning knobs in one place.
"""

from functools import lru_cache
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # --- Environment ---
    env: str = Field(default="development", alias="ENV")
    log_level: str = Field(default="info", alias="LOG_LEVEL")
    debug: bool = Field(default=False, alias="DEBUG")

    # --- Database (metadata + vector index) ---
    database_url: str = Field(
        default="sqlite+aiosqlite:///./memostore.db",
        alias="DATABASE_URL",
    )

    # --- Durable store (Git hosting contents API) ---
    github_api_url: str = Field(default="https://api.github.com", alias="GITHUB_API_URL")
    memory_repo_name: str = Field(default="memostore-memories", alias="MEMORY_REPO_NAME")
    memory_repo_description: str = Field(
        default="Private repository for memostore memories",
        alias="MEMORY_REPO_DESCRIPTION",
    )
    memories_path: str = Field(default="memories.json", alias="MEMORIES_PATH")
    local_storage_path: str = Field(default="./local_storage", alias="LOCAL_STORAGE_PATH")

    # --- Embeddings ---
    embedding_api_key: str = Field(default="", alias="EMBEDDING_API_KEY")
    embedding_base_url: str = Field(default="https://api.openai.com/v1", alias="EMBEDDING_BASE_URL")
    embedding_model: str = Field(default="multilingual-e5-large-instruct", alias="EMBEDDING_MODEL")
    hashing_dimensions: int = Field(default=100, alias="HASHING_DIMENSIONS")

    # --- LLM (categorization / tagging) ---
    llm_api_key: str = Field(default="", alias="LLM_API_KEY")
    llm_base_url: str = Field(default="https://api.openai.com/v1", alias="LLM_BASE_URL")
    llm_model: str = Field(default="kimi-k2-turbo", alias="LLM_MODEL")
    fallback_category: str = Field(default="General", alias="FALLBACK_CATEGORY")

    # --- Timeouts (seconds) ---
    durable_timeout: float = Field(default=15.0, alias="DURABLE_TIMEOUT")
    embedding_timeout: float = Field(default=20.0, alias="EMBEDDING_TIMEOUT")
    categorize_timeout: float = Field(default=10.0, alias="CATEGORIZE_TIMEOUT")

    # --- Engine tuning ---
    version_conflict_retries: int = Field(default=2, alias="VERSION_CONFLICT_RETRIES")
    search_min_score: float = Field(default=0.1, alias="SEARCH_MIN_SCORE")
    similar_min_score: float = Field(default=0.3, alias="SIMILAR_MIN_SCORE")
    default_list_limit: int = Field(default=50, alias="DEFAULT_LIST_LIMIT")
    bulk_batch_size: int = Field(default=5, alias="BULK_BATCH_SIZE")
    write_cache_size: int = Field(default=256, alias="WRITE_CACHE_SIZE")

    # --- API ---
    api_host: str = Field(default="0.0.0.0", alias="API_HOST")
    api_port: int = Field(default=8000, alias="API_PORT")
    cors_origins: str = Field(default="*", alias="CORS_ORIGINS")


@lru_cache
def get_settings() -> Settings:
    return Settings()
