"""Application configuration."""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Engine settings loaded from environment variables."""

    # Environment
    environment: str = "development"  # development, staging, production

    # Database (SQLite is the supported storage engine)
    database_url: str = "sqlite+aiosqlite:///./schemashift.db"

    # Seconds SQLite waits on a locked database before failing a statement
    db_busy_timeout: float = 30.0

    # Backups
    backup_dir: str = "./backups"
    backup_retention_days: int = 30
    backup_compress: bool = False

    # Execution
    migration_timeout: float | None = 300.0  # advisory, per batch
    use_savepoints: bool = True

    # Rename detection
    rename_similarity_threshold: float = 0.7

    # Recorded as applied_by when the caller does not supply one
    applied_by: str = "system"

    # Logging
    log_level: str = "INFO"
    log_json: bool = False

    model_config = SettingsConfigDict(
        env_prefix="SCHEMASHIFT_",
        env_file=".env",
        case_sensitive=False,
    )


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
