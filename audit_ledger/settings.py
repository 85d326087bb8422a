"""Application settings and configuration."""

from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Database
    database_url: Optional[str] = None
    postgres_user: str = "ledger"
    postgres_password: str = "ledger_dev_password"
    postgres_host: str = "localhost"
    postgres_db: str = "audit_ledger"
    postgres_port: int = 5432

    # Redis (Celery broker and job locks)
    redis_url: str = "redis://localhost:6379/0"

    # MinIO / S3
    minio_endpoint: str = "localhost:9000"
    minio_access_key: Optional[str] = None  # Required in non-dev
    minio_secret_key: Optional[str] = None  # Required in non-dev
    minio_use_ssl: bool = False
    archive_bucket: str = "audit-archives"

    # Archive export
    archive_exports_enabled: bool = True
    archive_retention_days: int = 2555  # ~7 years
    archive_retention_grace_days: int = 30
    archive_cleanup_retention_days: int = 90
    archive_export_lookback_days: int = 7
    archive_presigned_url_ttl: int = 3600

    # Scheduling
    verification_interval_seconds: int = 3600
    replication_poll_interval_seconds: int = 900
    export_hour_utc: int = 1
    job_lock_ttl_seconds: int = 1800

    # Store/storage calls
    operation_timeout_seconds: float = 300.0

    environment: str = "development"

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"

    @property
    def database_url_computed(self) -> str:
        """Compute async database URL if not explicitly set."""
        if self.database_url:
            url = self.database_url
        else:
            url = (
                f"postgresql://{self.postgres_user}:{self.postgres_password}"
                f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
            )
        if url.startswith("postgresql://"):
            url = url.replace("postgresql://", "postgresql+asyncpg://", 1)
        return url

    @property
    def database_url_sync(self) -> str:
        """Database URL with a synchronous driver, for Alembic."""
        url = self.database_url_computed
        if url.startswith("postgresql+asyncpg://"):
            return url.replace("postgresql+asyncpg://", "postgresql://", 1)
        if url.startswith("sqlite+aiosqlite://"):
            return url.replace("sqlite+aiosqlite://", "sqlite://", 1)
        return url

    @property
    def is_development(self) -> bool:
        """Check if running in development."""
        return self.environment.lower() == "development"

    def validate_production_settings(self):
        """Validate settings for production environment."""
        env = self.environment.lower()
        if env not in ("development", "test", "dev"):
            if not self.minio_access_key or not self.minio_secret_key:
                raise ValueError(
                    "MINIO_ACCESS_KEY and MINIO_SECRET_KEY are required in production. "
                    "Do not use default credentials."
                )
            if self.archive_retention_days <= 0:
                raise ValueError("ARCHIVE_RETENTION_DAYS must be positive in production.")


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
