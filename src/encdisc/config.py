"""Configuration management for the Encounter Discovery Pipeline."""

from typing import Literal, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Built once by the caller (CLI, worker) and passed explicitly to every
    component of a run. Nothing in the package reads the environment on its own.
    """

    model_config = SettingsConfigDict(
        env_prefix="ENCDISC_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Database
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_user: str = "encdisc"
    postgres_password: str = "localdev"
    postgres_db: str = "encdisc"
    database_url_override: Optional[str] = Field(
        None, description="Full SQLAlchemy URL, wins over the postgres_* fields"
    )
    db_commit_timeout_seconds: float = Field(default=30.0, gt=0)

    # AI inference (OpenAI-compatible chat completions endpoint)
    ai_base_url: str = "https://api.openai.com/v1"
    ai_api_key: str = ""
    ai_model: str = "gpt-4o-mini"
    ai_timeout_seconds: float = Field(default=120.0, gt=0)
    ai_max_output_tokens: int = Field(default=8192, ge=1)
    ai_input_cost_per_million: float = Field(default=0.15, ge=0)
    ai_output_cost_per_million: float = Field(default=0.60, ge=0)

    # Object store (read-only OCR output)
    ocr_url_template: str = Field(
        default="http://localhost:9000/ocr/{patient_id}/{shell_file_id}.json",
        description="URL template for per-document OCR JSON",
    )
    storage_timeout_seconds: float = Field(default=30.0, gt=0)

    # Chunking
    chunk_size: int = Field(default=50, ge=1)
    low_confidence_threshold: float = Field(default=0.7, ge=0.0, le=1.0)
    link_by_boundary: bool = True
    unclosed_chain_policy: Literal["flag", "fail"] = "flag"

    # Retry envelope
    inference_max_retries: int = Field(default=3, ge=0)
    inference_retry_base_seconds: float = Field(default=2.0, ge=0)
    inference_retry_cap_seconds: float = Field(default=30.0, ge=0)
    storage_max_retries: int = Field(default=3, ge=0)
    storage_retry_base_seconds: float = Field(default=1.0, ge=0)
    storage_retry_cap_seconds: float = Field(default=10.0, ge=0)
    datastore_max_retries: int = Field(default=2, ge=0)
    datastore_retry_base_seconds: float = Field(default=0.5, ge=0)
    datastore_retry_cap_seconds: float = Field(default=5.0, ge=0)
    max_retry_after_seconds: float = Field(default=300.0, ge=0)
    reschedule_delay_seconds: int = Field(default=300, ge=0)

    # Processing
    max_concurrent_documents: int = Field(default=4, ge=1)
    pipeline_version: str = "pass05-progressive-1"

    # Logging
    log_level: str = "INFO"
    log_json: bool = True

    @field_validator("ai_base_url")
    @classmethod
    def _strip_base_url(cls, value: str) -> str:
        value = value.strip()
        if not (value.startswith("http://") or value.startswith("https://")):
            raise ValueError("ai_base_url must start with http:// or https://")
        return value.rstrip("/")

    @field_validator("log_level")
    @classmethod
    def _upper_log_level(cls, value: str) -> str:
        return value.upper()

    @property
    def database_url(self) -> str:
        """Construct async database URL."""
        if self.database_url_override:
            return self.database_url_override
        return (
            f"postgresql+asyncpg://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    @property
    def sync_database_url(self) -> str:
        """Construct sync database URL for Alembic."""
        if self.database_url_override:
            return self.database_url_override.replace("+asyncpg", "").replace("+aiosqlite", "")
        return (
            f"postgresql://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )
