"""Application configuration."""

import os

from pydantic_settings import BaseSettings, SettingsConfigDict

_ENVIRONMENT = os.getenv("ENVIRONMENT", "local")


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    supabase_url: str
    supabase_service_key: str
    openai_api_key: str | None = None
    openai_model: str = "gpt-5.2"
    openai_reasoning_effort: str = "high"
    openai_store: bool = False
    inference_backend: str = "openai"
    edge_function_url: str | None = None
    inference_timeout_seconds: float = 9.0
    inference_max_attempts: int = 2
    inference_retry_delay_seconds: float = 1.0
    inference_max_retry_delay_seconds: float = 5.0
    malformed_output_retries: int = 1
    note_max_length: int = 140
    quota_timezone: str = "UTC"
    quota_fail_open: bool = True
    free_vision_limit: int = 5
    free_text_limit: int = 20
    premium_vision_limit: int = 100
    premium_text_limit: int = 500
    synonym_cache_ttl_seconds: int = 3600
    analysis_cache_days: int = 7
    environment: str = _ENVIRONMENT

    model_config = SettingsConfigDict(
        env_file=(f".env.{_ENVIRONMENT}", ".env"),
        extra="ignore",
    )


def parse_dietary_prefs(raw: str | list[str] | None) -> tuple[str, ...]:
    """Parse dietary preferences from a comma-separated string or list."""
    if raw is None:
        return ()
    chunks = raw.split(",") if isinstance(raw, str) else raw
    prefs: list[str] = []
    for chunk in chunks:
        value = chunk.strip().lower()
        if value and value not in prefs:
            prefs.append(value)
    return tuple(prefs)
