"""Configuration management for story-recall.

Settings are read from ``STORY_RECALL_*`` environment variables (and an optional
``.env`` file) through pydantic-settings. ``ConfigManager`` is the single
process-wide cache of the loaded settings; it expires after a TTL and can be
invalidated explicitly, e.g. after an operator rotates provider credentials.
"""

import time
from pathlib import Path
from typing import Literal, Optional

from loguru import logger
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from story_recall.utils import setup_logging

DATA_DIR_NAME = ".story-recall"
DEFAULT_DATABASE_NAME = "story-recall.db"


class StoryRecallConfig(BaseSettings):
    """Runtime settings for the retrieval engine."""

    env: Literal["test", "dev", "user"] = Field(
        default="dev", description="Environment name"
    )

    database_path: Path = Field(
        default_factory=lambda: Path.home() / DATA_DIR_NAME / DEFAULT_DATABASE_NAME,
        description="SQLite database file holding entities and embedding records",
    )

    log_level: str = Field(default="INFO", description="Minimum log level")
    log_file: Optional[Path] = Field(
        default=None, description="Optional log file, rotated by loguru"
    )

    # Embedding provider
    embedding_provider: str = Field(
        default="openai", description="Embedding backend: 'openai' or 'fastembed'"
    )
    embedding_model: str = Field(
        default="text-embedding-3-large", description="Embedding model name"
    )
    embedding_dimensions: Optional[int] = Field(
        default=None,
        description="Override the provider's default vector dimensionality",
        gt=0,
    )
    embedding_batch_size: int = Field(default=64, gt=0)
    embedding_max_input_chars: int = Field(
        default=8000,
        description="Inputs longer than this are truncated (prefix kept) before embedding",
        gt=0,
    )
    embedding_timeout: float = Field(
        default=10.0, description="Seconds before a provider call is abandoned", gt=0
    )
    openai_base_url: Optional[str] = Field(default=None)

    # Synchronization
    sync_max_workers: int = Field(
        default=4, description="Size of the refresh worker pool", gt=0
    )
    sync_retry_delays: tuple[float, ...] = Field(
        default=(0.5, 2.0),
        description="Backoff delays between retries of transient failures",
    )
    sync_document_deadline: float = Field(
        default=300.0, description="Overall deadline for a document refresh, in seconds", gt=0
    )

    # Retrieval
    search_threshold: float = Field(default=0.3, ge=0.0, le=1.0)
    search_card_top_k: int = Field(default=10, gt=0)
    search_summary_top_k: int = Field(default=5, gt=0)
    search_semantic_weight: float = Field(
        default=1.0,
        description="Weight of the semantic score for fresh candidates; the rest is lexical",
        ge=0.0,
        le=1.0,
    )

    config_ttl_seconds: float = Field(default=60.0, ge=0.0)

    model_config = SettingsConfigDict(
        env_prefix="STORY_RECALL_",
        env_file=".env",
        extra="ignore",
    )

    @field_validator("embedding_provider")
    @classmethod
    def _normalize_provider(cls, value: str) -> str:
        return value.strip().lower()

    @field_validator("sync_retry_delays")
    @classmethod
    def _validate_delays(cls, value: tuple[float, ...]) -> tuple[float, ...]:
        if any(delay < 0 for delay in value):
            raise ValueError("retry delays must be non-negative")
        return value

    @property
    def database_url(self) -> str:
        return f"sqlite+aiosqlite:///{self.database_path}"

    @property
    def is_test_env(self) -> bool:
        return self.env == "test"


class ConfigManager:
    """Process-wide cache of ``StoryRecallConfig`` with a TTL.

    The cache lives on the class so every ``ConfigManager()`` shares it.
    """

    _cached: Optional[StoryRecallConfig] = None
    _loaded_at: float = 0.0

    @property
    def config(self) -> StoryRecallConfig:
        cls = type(self)
        now = time.monotonic()
        if cls._cached is not None:
            ttl = cls._cached.config_ttl_seconds
            if ttl == 0 or now - cls._loaded_at < ttl:
                return cls._cached

        cls._cached = StoryRecallConfig()
        cls._loaded_at = now
        logger.debug("Loaded story-recall configuration")
        return cls._cached

    @classmethod
    def invalidate(cls) -> None:
        """Drop the cached config so the next access re-reads the environment."""
        cls._cached = None
        cls._loaded_at = 0.0

    @classmethod
    def set_config(cls, config: StoryRecallConfig) -> None:
        """Pin an explicit config, mainly for tests and embedding callers."""
        cls._cached = config
        cls._loaded_at = time.monotonic()


def init_logging(config: StoryRecallConfig | None = None) -> None:
    """Configure loguru sinks from config."""
    app_config = config or ConfigManager().config
    setup_logging(
        log_level=app_config.log_level,
        log_file=app_config.log_file,
        console=not app_config.is_test_env,
    )
