"""Application settings for the chatbot service (OpenAI + Milvus + Firestore + Redis)."""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Service settings, loaded from ``CHATBOT_``-prefixed environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="CHATBOT_",
        env_file=None,
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Core application settings
    app_env: Literal["development", "test", "staging", "production"] = "development"
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    debug: bool = False

    # CORS - use string to avoid JSON parsing issues
    cors_origins_str: str = Field(default="http://localhost:3000,https://localhost:3000", alias="cors_origins")

    @property
    def cors_origins(self) -> list[str]:
        """Parse CORS origins from string."""
        if not self.cors_origins_str.strip():
            return ["http://localhost:3000", "https://localhost:3000"]
        return [origin.strip() for origin in self.cors_origins_str.split(",") if origin.strip()]

    # OpenAI
    openai_api_key: str | None = None
    openai_base_url: str = "https://api.openai.com/v1"
    openai_chat_model: str = "gpt-4o-mini"
    openai_summary_model: str = "gpt-4o-mini"
    openai_embedding_model: str = "text-embedding-3-small"
    openai_timeout_seconds: float = 30.0

    # Milvus (HTTP v2 API)
    milvus_endpoint: str | None = None
    milvus_token: str | None = None
    milvus_documents_collection: str = "chatbot_documents"
    milvus_memories_collection: str = "chatbot_memories"
    milvus_vector_field: str = "embedding"

    # Retrieval
    search_top_k: int = Field(default=5, ge=1, le=100)
    search_num_candidates: int = Field(default=100, ge=1, le=2048)
    min_relevance_score: float | None = Field(default=None, ge=-1.0, le=1.0)
    context_char_budget: int = Field(default=1500, ge=0)

    # Memory
    memory_min_answer_chars: int = Field(default=50, ge=0)

    # Firestore
    firestore_project: str | None = None
    firestore_database: str = "(default)"
    conversations_collection: str = "conversations"

    # Redis (question catalog)
    redis_url: str | None = None

    # LangSmith run tracking
    tracing_enabled: bool = False
    langsmith_api_key: str | None = None
    langsmith_endpoint: str = "https://api.smith.langchain.com"
    langsmith_project: str = "default"

    # Top questions
    question_merge_threshold: float = Field(default=0.85, ge=-1.0, le=1.0)
    top_questions_limit: int = Field(default=10, ge=1)

    # Document ingestion
    ingest_chunk_size: int = Field(default=500, ge=50)
    ingest_chunk_overlap: int = Field(default=50, ge=0)

    @field_validator("ingest_chunk_overlap")
    @classmethod
    def overlap_smaller_than_chunk(cls, v: int, info) -> int:
        """Overlap must leave room for forward progress."""
        chunk_size = info.data.get("ingest_chunk_size", 500)
        if v >= chunk_size:
            raise ValueError("ingest_chunk_overlap must be smaller than ingest_chunk_size")
        return v

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.app_env == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.app_env == "production"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
