"""
Configuration management using Pydantic Settings.
Reads from environment variables.
"""

from pydantic import ConfigDict, Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings."""

    model_config = ConfigDict(env_file=".env", case_sensitive=False)

    # Language Service Configuration
    openai_api_key: str | None = Field(default=None, alias="OPENAI_API_KEY")
    litellm_model: str = Field(default="gpt-4o-mini", alias="LITELLM_MODEL")
    llm_timeout_seconds: float = Field(default=15.0, alias="LLM_TIMEOUT_SECONDS")
    extraction_temperature: float = Field(default=0.1, alias="EXTRACTION_TEMPERATURE")
    generation_temperature: float = Field(default=0.7, alias="GENERATION_TEMPERATURE")
    generation_max_tokens: int = Field(default=100, alias="GENERATION_MAX_TOKENS")

    # Session store controls
    max_sessions: int = Field(default=1000, alias="MAX_SESSIONS")
    session_ttl_seconds: int = Field(default=86400, alias="SESSION_TTL_SECONDS")

    # Snowflake Configuration
    snowflake_account: str = Field(default="", alias="SNOWFLAKE_ACCOUNT")
    snowflake_user: str = Field(default="", alias="SNOWFLAKE_USER")
    snowflake_password: str = Field(default="", alias="SNOWFLAKE_PASSWORD")
    snowflake_warehouse: str = Field(default="", alias="SNOWFLAKE_WAREHOUSE")
    snowflake_database: str = Field(default="", alias="SNOWFLAKE_DATABASE")
    snowflake_schema: str = Field(default="", alias="SNOWFLAKE_SCHEMA")
    snowflake_sessions_table: str = Field(
        default="QUALIFICATION_SESSIONS", alias="SNOWFLAKE_SESSIONS_TABLE"
    )

    # Application Configuration
    environment: str = Field(default="development", alias="ENVIRONMENT")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # Circuit Breaker Configuration
    circuit_breaker_failure_threshold: int = Field(
        default=5, alias="CIRCUIT_BREAKER_FAILURE_THRESHOLD"
    )
    circuit_breaker_timeout: int = Field(default=60, alias="CIRCUIT_BREAKER_TIMEOUT")


# Global settings instance
settings = Settings()
