"""
Application configuration management.
Uses pydantic-settings for environment variable parsing with validation.

All sensitive configuration should be stored in .env file (never commit to git).
"""

from pydantic_settings import BaseSettings
from pydantic import Field


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Required environment variables:
    - JWT_SECRET_KEY: Secret key for verifying JWT tokens

    Optional (have defaults):
    - DATABASE_URL: Database connection string
    - DB_TIMEOUT_SECONDS: Driver-level timeout for storage calls
    - JWT_ALGORITHM, JWT_EXPIRATION_MINUTES: Token settings
    - SAMPLE_SIZE_EXACT_QUANTILES: Derive sample-size z quantiles from the
      requested significance level and power instead of the fixed 1.96/0.84
    - API_TITLE, API_VERSION, LOG_LEVEL: API metadata
    """

    database_url: str = Field(
        default="sqlite:///./experiments.db",
        description="Database connection URL"
    )
    db_timeout_seconds: float = Field(
        default=5.0,
        description="Busy timeout (SQLite) or connect timeout (PostgreSQL) in seconds"
    )

    api_title: str = Field(default="Experimentation Engine")
    api_version: str = Field(default="1.0.0")
    api_description: str = Field(
        default="Marketplace A/B testing: assignment, event tracking and statistical analysis"
    )

    jwt_secret_key: str = Field(
        ...,
        description="Secret key for JWT signing. Generate with: openssl rand -hex 32"
    )
    jwt_algorithm: str = Field(
        default="HS256",
        description="Algorithm for JWT encoding"
    )
    jwt_expiration_minutes: int = Field(
        default=60,
        description="JWT token expiration time in minutes"
    )

    sample_size_exact_quantiles: bool = Field(default=False)

    log_level: str = Field(default="INFO")

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False


settings = Settings()
