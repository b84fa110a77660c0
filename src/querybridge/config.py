"""Configuration settings for the application."""

from pydantic_settings import (
    BaseSettings,
    SettingsConfigDict,
)

_DEFAULT_SYSTEM_PROMPT = "This is an agent for teaching kindergarten math."


class Settings(BaseSettings):
    """Pydantic settings class for the application."""

    # Define the settings with default values and types
    # These will be loaded from environment variables or a .env file if not provided
    LOG_LEVEL: str = "info"  # Options: debug, info, warning, error, critical

    # Database Configuration
    DB_USERNAME: str = "username"
    DB_PASSWORD: str = "password"
    DB_NAME: str = "postgres"
    DB_HOST: str = "database"  # Service name in docker-compose
    DB_PORT: int = 5432
    DB_SCHEMA: str = "public"
    DB_POOL_MAX_SIZE: int = 10
    DB_CONNECT_TIMEOUT: float = 10.0
    DB_IDLE_TIMEOUT: float = 30.0

    # Query execution
    QUERY_MAX_ATTEMPTS: int = 3
    QUERY_BACKOFF_BASE: float = 1.0  # seconds, multiplied by the attempt number
    QUERY_READ_ONLY: bool = True

    # Capability host (MCP server)
    MCP_HOST: str = "0.0.0.0"
    MCP_PORT: int = 4321
    MCP_SERVER_URL: str = "http://localhost:4321/sse"

    # LLM Configuration
    MODEL_PROVIDER: str = "openai"  # Options: openai, anthropic
    OPENAI_API_KEY: str | None = None
    OPENAI_MODEL: str = "gpt-4o"
    AZURE_OPENAI_ENDPOINT: str | None = None
    AZURE_OPENAI_API_VERSION: str = "2025-01-01-preview"
    ANTHROPIC_API_KEY: str | None = None
    ANTHROPIC_MODEL: str = "claude-3-5-haiku-latest"
    MAX_OUTPUT_TOKENS: int = 800

    # Orchestration loop
    MODEL_TIMEOUT: float = 60.0
    TOOL_TIMEOUT: float = 60.0
    MAX_TURNS: int = 10
    TOOL_RESULT_MAX_LENGTH: int = 10_000
    SYSTEM_PROMPT: str = _DEFAULT_SYSTEM_PROMPT

    # Load environment variables from a .env file
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")


settings = Settings()
