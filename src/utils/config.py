"""Type-safe environment configuration using Pydantic Settings."""

from pathlib import Path
from typing import Literal

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application configuration loaded from environment variables.

    Values come from the process environment first, then from the env file
    (``.env`` unless another path is passed as ``_env_file``). Lines of the
    form ``export KEY=value`` are accepted in the env file.
    Secrets are masked in string representations.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",  # Ignore extra fields in .env
        env_ignore_empty=True,
    )

    # Required fields - will raise error if missing
    APP_NAME: str = Field(
        ...,
        description="Application name"
    )

    ENVIRONMENT: Literal["development", "staging", "production"] = Field(
        ...,
        description="Application environment"
    )

    # Logging
    LOG_LEVEL: str = Field(
        default="INFO",
        description="Logging level"
    )

    LOG_JSON: bool = Field(
        default=False,
        description="Emit logs as JSON lines instead of plain text"
    )

    DEBUG: bool = Field(
        default=False,
        description="Debug mode flag (also echoes SQL)"
    )

    # Database configuration
    DATABASE_URL: SecretStr | None = Field(
        default=None,
        description="Database connection URL (PostgreSQL in production, SQLite for local runs)"
    )

    DB_AUTOMIGRATE: bool = Field(
        default=True,
        description="Create missing tables when the worker starts"
    )

    DB_POOL_SIZE: int = Field(
        default=5,
        description="Database connection pool size",
        gt=0
    )

    DB_MAX_OVERFLOW: int = Field(
        default=10,
        description="Maximum overflow connections in pool",
        ge=0
    )

    DB_POOL_TIMEOUT: int = Field(
        default=30,
        description="Database pool timeout in seconds",
        gt=0
    )

    DB_MAX_RETRIES: int = Field(
        default=3,
        description="Maximum number of retry attempts for database operations",
        ge=0
    )

    DB_RETRY_DELAY: float = Field(
        default=1.0,
        description="Initial delay between retries in seconds",
        gt=0
    )

    # Task queue / worker
    WORKER_QUEUE: str = Field(
        default="bloodhound",
        description="Queue class used for analysis tasks",
        min_length=1
    )

    WORKER_MAX_RETRIES: int = Field(
        default=3,
        description="Redeliveries allowed after the first failed attempt",
        ge=0
    )

    WORKER_MAX_TIMEOUT: int = Field(
        default=60,
        description="Per-delivery timeout in minutes",
        gt=0
    )

    WORKER_CONCURRENCY: int = Field(
        default=1,
        description="Concurrent deliveries per queue",
        gt=0
    )

    WORKER_POLL_INTERVAL: float = Field(
        default=1.0,
        description="Seconds to wait before polling an empty queue again",
        gt=0
    )

    WORKER_RECOVER_INTERVAL: float = Field(
        default=60.0,
        description="Seconds between sweeps for deliveries whose lease expired",
        gt=0
    )

    WORKER_RETRY_DELAY: float = Field(
        default=15.0,
        description="Backoff before the first redelivery, doubled for each further one",
        ge=0
    )

    WORKER_RETRY_MAX_DELAY: float = Field(
        default=600.0,
        description="Upper bound for the redelivery backoff in seconds",
        ge=0
    )

    # Object storage
    S3_BUCKET_PREFIX: str = Field(
        default="s3://active-hacks/simulations/active_directory/results",
        description="Prefix under which each simulation keeps its artifacts"
    )

    S3_DOWNLOAD_LOCATION: Path = Field(
        default=Path("/tmp/activehacks/bloodhound"),
        description="Root of the per-organization working areas"
    )

    S3_ARTIFACT_NAME: str = Field(
        default="sharphound.zip",
        description="File name of the collected dataset inside the simulation prefix"
    )

    AWS_REGION: str | None = Field(
        default=None,
        description="AWS region for the S3 client"
    )

    AWS_ENDPOINT_URL: str | None = Field(
        default=None,
        description="Custom S3 endpoint (MinIO, localstack)"
    )

    AWS_ACCESS_KEY_ID: SecretStr | None = Field(
        default=None,
        description="Explicit access key; the boto3 credential chain is used when unset"
    )

    AWS_SECRET_ACCESS_KEY: SecretStr | None = Field(
        default=None,
        description="Explicit secret key; the boto3 credential chain is used when unset"
    )

    # BloodHound instance automation
    BLOODHOUND_SCRIPT_PATH: Path = Field(
        default=Path("/tmp/bloodhound-automation"),
        description="Directory containing the BloodHound automation script"
    )

    BLOODHOUND_SCRIPT_NAME: str = Field(
        default="bloodhound-automation.py",
        description="Automation script file name"
    )

    BLOODHOUND_PYTHON: str = Field(
        default="python3",
        description="Interpreter used to run the automation script"
    )

    # AD-miner
    ADMINER_BINARY: str = Field(
        default="AD-miner",
        description="AD-miner executable"
    )

    NEO4J_USERNAME: str = Field(
        default="neo4j",
        description="Neo4j user of the provisioned BloodHound instance"
    )

    NEO4J_PASSWORD: SecretStr = Field(
        default=SecretStr("neo5j"),
        description="Neo4j password of the provisioned BloodHound instance"
    )

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is one of the standard levels."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(
                f"LOG_LEVEL must be one of {valid_levels}, got '{v}'"
            )
        return v_upper

    @field_validator("S3_BUCKET_PREFIX")
    @classmethod
    def validate_bucket_prefix(cls, v: str) -> str:
        """Require an s3:// URL and drop any trailing slash."""
        if not v.startswith("s3://"):
            raise ValueError(f"S3_BUCKET_PREFIX must start with 's3://', got '{v}'")
        return v.rstrip("/")

    def get_database_url(self) -> str | None:
        """Get the database URL value if set."""
        return self.DATABASE_URL.get_secret_value() if self.DATABASE_URL else None

    def get_neo4j_password(self) -> str:
        """Get the Neo4j password value."""
        return self.NEO4J_PASSWORD.get_secret_value()

    @property
    def worker_timeout_seconds(self) -> int:
        """Per-delivery timeout converted to seconds."""
        return self.WORKER_MAX_TIMEOUT * 60


# Singleton instance
_settings: Settings | None = None


def get_settings() -> Settings:
    """
    Get the application settings singleton.

    Loads settings from environment variables and .env file on first call.
    Subsequent calls return the cached instance.

    Returns:
        Settings: The application settings instance

    Raises:
        ValidationError: If required environment variables are missing or invalid
    """
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def load_settings(env_file: str | Path | None = None) -> Settings:
    """
    Load settings from an explicit env file and install them as the singleton.

    Args:
        env_file: Path to the env file. Missing files are an error so that a
            mistyped ``--env-file`` does not silently fall back to defaults.

    Returns:
        Settings: The freshly loaded settings

    Raises:
        FileNotFoundError: If env_file does not exist
        ValidationError: If required values are missing or invalid
    """
    global _settings
    if env_file is not None and not Path(env_file).is_file():
        raise FileNotFoundError(f"Environment file not found: {env_file}")
    _settings = Settings(_env_file=env_file) if env_file is not None else Settings()
    return _settings


def reset_settings() -> None:
    """Reset the settings singleton. Useful for testing."""
    global _settings
    _settings = None
