"""
Configuration management.

Loads settings from environment variables and .env file.
Prefix: MNEMO_
"""

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_CATEGORIES = [
    "Preference",
    "Interest",
    "Expertise",
    "Fact",
    "Technology",
    "Programming",
    "Science",
    "General",
]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="MNEMO_",
        env_file=".env",
        env_file_encoding="utf-8",
    )

    # Storage
    data_dir: Path = Field(default=Path("data"), description="Data storage directory")
    db_name: str = Field(default="mnemo.db", description="SQLite database name")

    # Completion provider
    completion_model: str = Field(default="ollama/llama3.1", description="LiteLLM completion model")
    completion_api_key: str = Field(default="", description="Completion API key")
    completion_api_base: str = Field(default="", description="Completion endpoint override")

    # Embedding provider
    embedding_model: str = Field(
        default="ollama/nomic-embed-text", description="LiteLLM embedding model"
    )
    embedding_api_key: str = Field(default="", description="Embedding API key")
    embedding_api_base: str = Field(default="", description="Embedding endpoint override")
    embedding_dimensions: int = Field(default=768, gt=0, description="Embedding vector size")
    embedding_cache_size: int = Field(default=2048, ge=0, description="Embedding LRU cache size")
    embedding_batch_size: int = Field(default=32, gt=0, description="Texts per embedding call")

    # Retrieval
    similarity_threshold: float = Field(
        default=0.7, ge=0.0, le=1.0, description="Minimum cosine similarity for semantic hits"
    )
    semantic_top_k: int = Field(default=20, gt=0, description="Semantic candidates per turn")
    recent_episodic_limit: int = Field(default=50, gt=0, description="Episodic candidates per turn")

    # Scoring and compression
    max_context_tokens: int = Field(default=8000, gt=0, description="Default context budget")
    relevance_floor: float = Field(
        default=0.5, ge=0.0, le=1.0, description="Memories must score above this to be admitted"
    )
    recency_half_life_hours: float = Field(default=24.0, gt=0, description="Recency decay constant")
    tie_epsilon: float = Field(default=0.01, ge=0.0, description="Relevance tie window")
    topic_window: int = Field(default=5, gt=0, description="Recent turns used to derive the topic")
    summary_max_tokens: int = Field(default=256, gt=0, description="Max tokens per category summary")

    # Semantic extraction
    extraction_enabled: bool = Field(default=True, description="Run background extraction")
    extraction_batch_size: int = Field(default=5, gt=0, description="Episodes per extraction batch")
    extraction_min_confidence: float = Field(
        default=0.7, ge=0.0, le=1.0, description="Discard proposals below this confidence"
    )
    extraction_max_concepts_per_memory: int = Field(
        default=3, gt=0, description="Concepts accepted per source episode"
    )
    extraction_max_attempts: int = Field(
        default=3, gt=0, description="Failed attempts before an episode is skipped for good"
    )
    extraction_relationships: bool = Field(default=True, description="Link extracted concepts")
    extraction_categories: list[str] = Field(
        default_factory=lambda: list(DEFAULT_CATEGORIES), description="Accepted concept categories"
    )

    # Resilience
    retry_attempts: int = Field(default=3, gt=0, description="Attempts for transient failures")
    retry_base_delay: float = Field(default=0.5, ge=0.0, description="Backoff base delay (s)")
    retry_max_delay: float = Field(default=8.0, ge=0.0, description="Backoff ceiling (s)")
    request_timeout_seconds: float = Field(
        default=30.0, gt=0, description="Deadline for a single external call"
    )

    @property
    def db_path(self) -> Path:
        return self.data_dir / self.db_name


def get_settings() -> Settings:
    """Get settings instance."""
    return Settings()
