"""Application configuration using Pydantic Settings."""

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    database_url: str = Field(
        default="sqlite:///./ledger.db",
        description="Database connection URL for entity records",
    )

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")

    # Transaction ledger
    ledger_max_transactions: int = Field(
        default=100,
        ge=1,
        description="Number of most recent transactions kept in memory",
    )
    ledger_history_limit: int = Field(
        default=50,
        ge=1,
        description="Default page size for transaction history queries",
    )
    rollback_max_age_days: int = Field(
        default=30,
        ge=0,
        description="Transactions older than this cannot be rolled back",
    )

    # Audit
    audit_max_entries: int = Field(
        default=10000,
        ge=1,
        description="Number of audit entries kept in memory",
    )

    # Scheduler
    scheduler_poll_interval_seconds: float = Field(
        default=1.0,
        gt=0,
        description="Delay between scheduler worker passes",
    )
    scheduler_retry_delay_minutes: int = Field(
        default=5,
        ge=0,
        description="Delay before a failed task is retried",
    )

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False
        extra = "ignore"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
