from __future__ import annotations

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Central configuration loaded from environment / .env file."""

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}

    # Storage
    db_path: str = "data/health_check.db"
    checks_file: str = "checks.yaml"  # category config seeds

    # Check targets
    app_base_url: str = "http://localhost:3000"
    groq_api_url: str = "https://api.groq.com/openai/v1/models"
    groq_api_key: str = ""  # check skipped when empty

    # Check execution defaults
    default_timeout_ms: int = 30_000
    default_retry_count: int = 1
    retry_base_delay_ms: int = 1_000  # backoff = base * (attempt + 1)
    cache_ttl_seconds: int = 300
    retention_days: int = 30

    environment: str = "production"

    # API
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    # Logging
    log_level: str = "INFO"


settings = Settings()
