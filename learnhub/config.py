"""
Configuration module using Pydantic Settings.
Supports environment variables and .env files.
"""

from pathlib import Path
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

PDF_MAGIC_HEADER = b"%PDF"
CLOUDINARY_API_BASE = "https://api.cloudinary.com/v1_1"


class StorageSettings(BaseSettings):
    """Object store (Cloudinary) credentials and upload defaults."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    cloudinary_cloud_name: str | None = Field(default=None)
    cloudinary_api_key: str | None = Field(default=None)
    cloudinary_api_secret: str | None = Field(default=None)
    cloudinary_upload_preset: str = Field(default="materials")
    cloudinary_folder: str | None = Field(default="materials")
    cloudinary_api_base: str = Field(default=CLOUDINARY_API_BASE)
    storage_timeout: float = Field(default=60.0)

    @property
    def can_sign(self) -> bool:
        return bool(self.cloudinary_api_key and self.cloudinary_api_secret)


class PathSettings(BaseSettings):
    """Path configuration for project directories."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    project_root: Path = Field(default=Path(__file__).parent.parent)

    @property
    def logs_dir(self) -> Path:
        return self.project_root / "logs"


class DatabaseSettings(BaseSettings):
    """Relational store for materials and the processing queue."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    database_url: str = Field(default="sqlite+aiosqlite:///./learnhub.db")
    database_echo: bool = Field(default=False)


class RAGSettings(BaseSettings):
    """Configuration for the extraction pipeline and RAG API."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    openai_api_key: str | None = Field(default=None)
    openai_base_url: str | None = Field(default=None)
    openai_embedding_model: str = Field(default="text-embedding-3-small")
    openai_embedding_dimension: int = Field(default=1536)
    openai_chat_model: str = Field(default="gpt-4o-mini")
    openai_timeout: float = Field(default=30.0)
    embedding_batch_size: int = Field(default=100)

    chunk_size: int = Field(default=1000)
    chunk_overlap: int = Field(default=200)
    min_alphanumeric_ratio: float = Field(default=0.7)

    similarity_threshold: float = Field(default=0.7)
    max_results: int = Field(default=5)
    max_context_length: int = Field(default=8000)
    answer_max_tokens: int = Field(default=800)
    answer_temperature: float = Field(default=0.1)
    follow_up_suggestions: bool = Field(default=True)

    download_timeout: float = Field(default=45.0)
    download_attempts: int = Field(default=3)
    download_backoff: float = Field(default=1.0)

    retry_attempts: int = Field(default=4)
    retry_base_delay: float = Field(default=1.0)
    retry_max_delay: float = Field(default=30.0)
    retry_jitter: float = Field(default=1.0)

    qdrant_location: str | None = Field(default=None)
    qdrant_host: str = Field(default="localhost")
    qdrant_port: int = Field(default=6333)
    qdrant_collection: str = Field(default="material_chunks")

    api_port: int = Field(default=8000)
    api_cors_origins: str = Field(default="*")


class WorkerSettings(BaseSettings):
    """Queue worker polling and processing-queue retry configuration."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        env_prefix="worker_",
    )

    poll_interval: float = Field(default=5.0)
    backoff_multiplier: float = Field(default=1.5)
    max_backoff: float = Field(default=60.0)
    shutdown_grace_period: float = Field(default=2.0)
    autostart: bool = Field(default=True)

    max_attempts: int = Field(default=5)
    retry_base_delay: float = Field(default=30.0)
    retry_max_delay: float = Field(default=900.0)
    claim_lease: float = Field(default=600.0)


storage_settings = StorageSettings()
paths = PathSettings()
db_settings = DatabaseSettings()
rag_settings = RAGSettings()
worker_settings = WorkerSettings()
