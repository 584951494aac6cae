"""Application settings."""

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

PROJECT_ROOT = Path(__file__).resolve().parents[3]

ChainMode = Literal["worker", "http", "inline"]
PartialTimeoutPolicy = Literal["requeue", "fail"]


class Settings(BaseSettings):
    """Runtime settings loaded from environment variables."""

    app_name: str = "batch-ingest"
    app_env: str = "dev"
    log_level: str = "INFO"

    # Backing stores.
    database_url: str = ""
    # Create the catalog tables too; off when the platform owns that schema.
    migrate_catalog: bool = False
    redis_url: str = "redis://localhost:6379/0"

    # Continuation protocol.
    chain_mode: ChainMode = "worker"
    public_base_url: str = "http://localhost:8000"
    internal_token: str = ""
    subtask_trigger_delay_s: float = Field(default=0.1, ge=0.0, le=5.0)
    trigger_timeout_s: float = Field(default=2.0, ge=0.1)

    # Submission limits.
    batch_size: int = Field(default=1, ge=1, le=10)
    max_resources_per_submission: int = Field(default=500, ge=1)
    max_resource_name_length: int = Field(default=100, ge=1)

    # Time budgets (seconds).
    host_timeout_s: float = Field(default=60.0, gt=0.0)
    max_processing_time_s: float = Field(default=45.0, ge=0.01, le=300.0)
    resource_timeout_s: float = Field(default=25.0, ge=0.01)
    ai_timeout_s: float = Field(default=10.0, ge=0.01)
    partial_timeout_policy: PartialTimeoutPolicy = "requeue"

    # Fast-store lifetimes (seconds).
    task_ttl_s: int = Field(default=7 * 24 * 3600, ge=60)
    progress_ttl_s: int = Field(default=3 * 24 * 3600, ge=60)
    retired_task_ttl_s: int = Field(default=3600, ge=1)
    max_user_active_tasks: int = Field(default=50, ge=1)

    # Category cache.
    category_cache_ttl_s: float = Field(default=300.0, ge=0.0)
    category_cache_max_wait_s: float = Field(default=5.0, ge=0.0)
    default_category_id: int = 1

    # Async content review.
    review_enabled: bool = True
    review_auto_approve_threshold: int = Field(default=60, ge=0, le=100)
    review_neutral_score: int = Field(default=50, ge=0, le=100)
    review_rate_limit_window_s: float = Field(default=60.0, gt=0.0)
    review_rate_limit_max: int = Field(default=20, ge=1)
    review_workers: int = Field(default=4, ge=1)
    review_timeout_s: float = Field(default=20.0, ge=0.5)

    # Generative-text provider (OpenAI-compatible chat completions).
    llm_provider: str = "openai"
    llm_model: str = "gpt-4o-mini"
    llm_base_url: str = "https://api.openai.com/v1"
    llm_api_key: str = ""
    llm_max_retries: int = Field(default=1, ge=0)
    llm_backoff_s: float = Field(default=0.2, ge=0.0)

    # Orphaned-chain reconciliation.
    recovery_inactivity_s: float = Field(default=300.0, ge=1.0)
    # How long a dispatched subtask may wait for a worker before it is re-sent.
    recovery_dispatch_grace_s: float = Field(default=900.0, ge=1.0)
    recovery_lock_ttl_s: int = Field(default=300, ge=60, le=3600)

    # Text pre-parser.
    max_text_length: int = Field(default=50_000, ge=1)
    max_ai_parse_blocks: int = Field(default=20, ge=1)
    ai_parse_concurrency: int = Field(default=3, ge=1, le=10)
    regex_success_ratio: float = Field(default=0.7, ge=0.0, le=1.0)

    model_config = SettingsConfigDict(
        env_prefix="BATCH_INGEST_",
        extra="ignore",
        env_file=(PROJECT_ROOT / ".env", PROJECT_ROOT / ".env.local"),
        env_file_encoding="utf-8",
    )

    @model_validator(mode="after")
    def _check_time_budgets(self) -> "Settings":
        if self.max_processing_time_s >= self.host_timeout_s:
            raise ValueError("max_processing_time_s must stay below host_timeout_s")
        if self.resource_timeout_s > self.max_processing_time_s:
            raise ValueError("resource_timeout_s must not exceed max_processing_time_s")
        if self.ai_timeout_s > self.resource_timeout_s:
            raise ValueError("ai_timeout_s must not exceed resource_timeout_s")
        return self

    @model_validator(mode="after")
    def _check_internal_token(self) -> "Settings":
        if self.chain_mode == "http" and not self.internal_token:
            raise ValueError("internal_token is required when chain_mode is http")
        return self


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
