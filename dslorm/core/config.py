from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Overrides the url declared in the datasource block when set
    DATABASE_URL: Optional[str] = None
    SCHEMA_PATH: str = "schema.orm"

    # Connection pool
    POOL_SIZE: int = 5
    POOL_MAX_OVERFLOW: int = 10
    POOL_TIMEOUT: float = 30.0
    POOL_RECYCLE: int = 1800
    ECHO_SQL: bool = False

    # Reconciliation
    RECONCILE_MAX_ATTEMPTS: int = 3
    RECONCILE_RETRY_DELAY: float = 1.0
    RECONCILE_LOCK_NAME: str = "dslorm_reconcile"
    RECONCILE_LOCK_TIMEOUT: int = 10

    # Reads are idempotent, so transient failures may be retried
    READ_RETRY_ATTEMPTS: int = 1
    READ_RETRY_DELAY: float = 0.2

    LOG_LEVEL: str = "INFO"

    # This tells Pydantic to read from the .env file
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


# Create a single instance of the settings to use everywhere
settings = Settings()
