"""
Configuration settings for txengine.

Uses Pydantic Settings to load environment variables for the database
connection, the connection pool, transaction retry behaviour, logging and the
benchmark CLI defaults.
"""
from __future__ import annotations

from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

IsolationLevel = Literal["serializable", "repeatable read", "read committed"]


class Settings(BaseSettings):
    # Database
    db_host: str = Field("localhost", alias="DB_HOST")
    db_port: int = Field(5432, alias="DB_PORT")
    db_user: str = Field("postgres", alias="DB_USER")
    db_password: str = Field("postgres", alias="DB_PASSWORD")
    db_name: str = Field("txengine", alias="DB_NAME")
    connect_attempts: int = Field(3, ge=1, alias="CONNECT_ATTEMPTS")
    isolation_level: IsolationLevel = Field("serializable", alias="ISOLATION_LEVEL")

    # Pool
    pool_stripes: int = Field(1, alias="POOL_STRIPES")
    pool_stripe_size: int = Field(10, alias="POOL_STRIPE_SIZE")
    pool_idle_timeout: float = Field(30.0, alias="POOL_IDLE_TIMEOUT")

    # Execution
    fetch_batch_size: int = Field(256, ge=1, alias="FETCH_BATCH_SIZE")
    conflict_retry_limit: Optional[int] = Field(None, ge=1, alias="CONFLICT_RETRY_LIMIT")

    # Application
    app_env: str = Field("development", alias="APP_ENV")
    log_level: str = Field("INFO", alias="LOG_LEVEL")
    log_json: bool = Field(False, alias="LOG_JSON")

    # Benchmark defaults
    bench_transactions: int = Field(1_000, alias="BENCH_TRANSACTIONS")
    bench_concurrency: int = Field(4, alias="BENCH_CONCURRENCY")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Retrieve a cached instance of Settings to avoid repeated env parsing.
    """
    return Settings()


def build_dsn(settings: Optional[Settings] = None) -> str:
    """Compose a PostgreSQL DSN string from settings."""
    settings = settings or get_settings()
    return (
        f"postgresql://{settings.db_user}:{settings.db_password}"
        f"@{settings.db_host}:{settings.db_port}/{settings.db_name}"
    )


__all__ = ["IsolationLevel", "Settings", "build_dsn", "get_settings"]
