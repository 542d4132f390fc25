"""Configuration management for the Vault Engine."""

from functools import lru_cache

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Load environment variables from .env file (only if accessible)
try:
    load_dotenv()
except (PermissionError, OSError):
    # In sandboxed environments, .env might not be accessible
    pass


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore",
    )

    # Supabase configuration (required)
    SUPABASE_URL: str = Field(..., description="Supabase project URL")
    SUPABASE_SERVICE_ROLE_KEY: str = Field(..., description="Supabase service role key")

    # Generation providers (at least one should be set in production)
    ANTHROPIC_API_KEY: str | None = Field(default=None, description="Anthropic API key")
    OPENAI_API_KEY: str | None = Field(default=None, description="OpenAI API key")

    # Environment
    VAULT_ENGINE_ENV: str = Field(default="dev", description="Environment: dev, staging, prod")

    # Generation defaults
    GENERATION_MODEL: str = Field(
        default="claude-sonnet-4-5-20250929", description="Primary Anthropic model"
    )
    FALLBACK_OPENAI_MODEL: str = Field(default="gpt-4o", description="OpenAI fallback model")
    GENERATION_TEMPERATURE: float = Field(default=0.7, description="Default sampling temperature")
    GENERATION_MAX_TOKENS: int = Field(default=8000, description="Default max output tokens")

    # Retry / backoff for generation calls
    GENERATION_MAX_RETRIES: int = Field(
        default=2, description="Retries after the first generation attempt"
    )
    GENERATION_INITIAL_DELAY: float = Field(default=0.5, description="First backoff delay (s)")
    GENERATION_MAX_DELAY: float = Field(default=5.0, description="Backoff delay ceiling (s)")
    GENERATION_BACKOFF_MULTIPLIER: float = Field(default=1.5, description="Backoff multiplier")
    DEFAULT_SECTION_TIMEOUT: float = Field(
        default=90.0, description="Per-call timeout for sections without their own (s)"
    )

    # Versioned store
    FIELD_WRITE_MAX_ATTEMPTS: int = Field(
        default=5, description="Max flip+insert attempts before a write conflict surfaces"
    )
    FIELD_WRITE_RETRY_DELAY: float = Field(
        default=0.05, description="First backoff delay after a version conflict (s)"
    )

    # Propagation
    PROPAGATION_ENABLED: bool = Field(
        default=True, description="Schedule atomic propagation after field writes"
    )


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Returns:
        Settings instance

    Raises:
        ValidationError: If required environment variables are missing
    """
    return Settings()
