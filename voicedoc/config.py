"""
VoiceDoc Worker - Configuration

ENVIRONMENT VARIABLE CONTRACT
=============================

Required:
  DATABASE_URL                  - Postgres connection string for the job queue
  OPENAI_API_KEY                - Transcription and analysis
  TWILIO_ACCOUNT_SID            - Messaging provider credentials (media download)
  TWILIO_AUTH_TOKEN
  SUPABASE_URL                  - Audio blob storage
  SUPABASE_SERVICE_ROLE_KEY
  COMPLETION_API_URL            - Document completion callback
  COMPLETION_API_KEY
  COMPLETION_API_SECRET         - HMAC signing secret

Storage (optional):
  STORAGE_BUCKET, STORAGE_PREFIX, COMPLETION_API_PATH

Worker tuning (all optional):
  WORKER_ID, WORKER_BATCH_SIZE, WORKER_POLL_INTERVAL_SECONDS,
  WORKER_MAX_ATTEMPTS, WORKER_LEASE_MINUTES, WORKER_LEASE_RECLAIM,
  STAGE_TIMEOUT_SECONDS, HEARTBEAT_INTERVAL_SECONDS,
  HARD_FAILURE_WINDOW_SECONDS, HARD_FAILURE_THRESHOLD,
  SHUTDOWN_REQUEUE_DELAY_SECONDS, WORKER_MODE, WORKER_ACTIVE_MODE,
  WORKER_VERSION, DB_POOL_MIN_SIZE, DB_POOL_MAX_SIZE, LOG_LEVEL, LOG_JSON

FAIL-FAST BEHAVIOR:
-------------------
If required variables are missing, get_settings() raises ConfigurationError
naming every missing variable and the worker exits with status 1.

Usage:
------
    from voicedoc.config import get_settings

    settings = get_settings()
    print(settings.WORKER_BATCH_SIZE)
"""

from __future__ import annotations

import logging
import os
from functools import lru_cache
from typing import Any

from pydantic import Field, ValidationError, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

REQUIRED_ENV_VARS = (
    "DATABASE_URL",
    "OPENAI_API_KEY",
    "TWILIO_ACCOUNT_SID",
    "TWILIO_AUTH_TOKEN",
    "SUPABASE_URL",
    "SUPABASE_SERVICE_ROLE_KEY",
    "COMPLETION_API_URL",
    "COMPLETION_API_KEY",
    "COMPLETION_API_SECRET",
)

SECRET_FIELDS = {
    "DATABASE_URL",
    "OPENAI_API_KEY",
    "TWILIO_AUTH_TOKEN",
    "SUPABASE_SERVICE_ROLE_KEY",
    "COMPLETION_API_KEY",
    "COMPLETION_API_SECRET",
}


class ConfigurationError(RuntimeError):
    """Raised when the environment cannot produce a valid Settings object."""

    def __init__(self, message: str, missing: list[str] | None = None):
        super().__init__(message)
        self.missing = missing or []


class Settings(BaseSettings):
    """
    Worker settings.

    Loads from environment variables with fallback to the file named by
    ENV_FILE (default ``.env``).
    """

    model_config = SettingsConfigDict(
        env_file=os.environ.get("ENV_FILE", ".env"),
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # =========================================================================
    # REQUIRED
    # =========================================================================

    DATABASE_URL: str = Field(..., min_length=1, description="Postgres connection string")
    OPENAI_API_KEY: str = Field(..., min_length=1, description="OpenAI API key")
    TWILIO_ACCOUNT_SID: str = Field(..., min_length=1, description="Messaging provider SID")
    TWILIO_AUTH_TOKEN: str = Field(..., min_length=1, description="Messaging provider token")
    SUPABASE_URL: str = Field(..., min_length=1, description="Storage project URL")
    SUPABASE_SERVICE_ROLE_KEY: str = Field(..., min_length=1, description="Storage service key")
    COMPLETION_API_URL: str = Field(..., min_length=1, description="Document API base URL")
    COMPLETION_API_KEY: str = Field(..., min_length=1, description="Document API key")
    COMPLETION_API_SECRET: str = Field(..., min_length=1, description="HMAC signing secret")

    # =========================================================================
    # STORAGE / COLLABORATORS
    # =========================================================================

    STORAGE_BUCKET: str = Field(default="voice-audio", description="Bucket for audio blobs")
    STORAGE_PREFIX: str = Field(default=".private", description="Key prefix for audio blobs")
    COMPLETION_API_PATH: str = Field(default="/api/voice/complete")

    OPENAI_TRANSCRIBE_MODEL: str = Field(default="whisper-1")
    OPENAI_ANALYSIS_MODEL: str = Field(default="gpt-4o-mini")

    # =========================================================================
    # WORKER TUNING
    # =========================================================================

    WORKER_ID: str | None = Field(default=None, description="Stable worker id; generated if unset")
    WORKER_BATCH_SIZE: int = Field(default=5, ge=1, le=100)
    WORKER_POLL_INTERVAL_SECONDS: float = Field(default=5.0, gt=0)
    WORKER_MAX_ATTEMPTS: int = Field(default=5, ge=1)
    WORKER_LEASE_MINUTES: int = Field(default=10, ge=1)
    WORKER_LEASE_RECLAIM: bool = Field(default=True)
    STAGE_TIMEOUT_SECONDS: float = Field(default=300.0, gt=0)
    RETRY_BASE_SECONDS: float = Field(default=60.0, gt=0)
    RETRY_JITTER_SECONDS: float = Field(default=30.0, ge=0)

    HEARTBEAT_INTERVAL_SECONDS: float = Field(default=30.0, gt=0)
    HARD_FAILURE_WINDOW_SECONDS: float = Field(default=120.0, gt=0)
    HARD_FAILURE_THRESHOLD: int = Field(default=5, ge=1)
    SHUTDOWN_REQUEUE_DELAY_SECONDS: float = Field(default=60.0, ge=0)

    WORKER_MODE: str = Field(default="legacy", description="Operational toggle")
    WORKER_ACTIVE_MODE: str = Field(default="external", description="Mode that enables polling")
    WORKER_IDLE_INTERVAL_SECONDS: float = Field(default=60.0, gt=0)
    WORKER_VERSION: str = Field(default="1.6.3")

    DB_POOL_MIN_SIZE: int = Field(default=1, ge=0)
    DB_POOL_MAX_SIZE: int = Field(default=10, ge=1)

    LOG_LEVEL: str = Field(default="INFO")
    LOG_JSON: bool = Field(default=False)

    # =========================================================================
    # VALIDATION & NORMALIZATION
    # =========================================================================

    @model_validator(mode="before")
    @classmethod
    def _normalize_values(cls, values: dict[str, Any]) -> dict[str, Any]:
        """Strip whitespace and quotes; remove newlines from connection strings."""
        for key, value in list(values.items()):
            if not isinstance(value, str):
                continue
            cleaned = value.strip().strip('"').strip("'").strip()
            if key.upper() == "DATABASE_URL":
                original = cleaned
                cleaned = cleaned.replace("\n", "").replace("\r", "").replace("\t", "")
                if cleaned != original:
                    logger.warning(
                        f"Sanitized {key}: removed internal whitespace/newlines "
                        f"(original length={len(original)}, cleaned={len(cleaned)})"
                    )
            values[key] = cleaned
        return values

    @model_validator(mode="after")
    def _check_pool_bounds(self) -> "Settings":
        if self.DB_POOL_MIN_SIZE > self.DB_POOL_MAX_SIZE:
            raise ValueError("DB_POOL_MIN_SIZE must not exceed DB_POOL_MAX_SIZE")
        return self

    @property
    def is_active_mode(self) -> bool:
        """True when WORKER_MODE enables queue polling."""
        return self.WORKER_MODE.strip().lower() == self.WORKER_ACTIVE_MODE.strip().lower()

    @property
    def lease_seconds(self) -> float:
        return self.WORKER_LEASE_MINUTES * 60.0


def _missing_from(exc: ValidationError) -> list[str]:
    missing = []
    for error in exc.errors():
        if error.get("type") == "missing" and error.get("loc"):
            missing.append(str(error["loc"][0]).upper())
    return missing


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Raises:
        ConfigurationError: required variables are missing or a value is invalid
    """
    try:
        return Settings()  # type: ignore[call-arg]
    except ValidationError as exc:
        missing = _missing_from(exc)
        if missing:
            raise ConfigurationError(
                f"Missing required environment variables: {', '.join(missing)}", missing
            ) from exc
        raise ConfigurationError(f"Invalid configuration: {exc}") from exc


def reset_settings() -> None:
    """Clear the cached settings (for testing)."""
    get_settings.cache_clear()


def print_effective_config(settings: Settings, redact_secrets: bool = True) -> dict[str, Any]:
    """Return the effective configuration with secrets masked."""
    config: dict[str, Any] = {}
    for field_name in Settings.model_fields:
        value = getattr(settings, field_name, None)
        if redact_secrets and field_name in SECRET_FIELDS:
            config[field_name] = f"***SET*** (len={len(str(value))})" if value else None
        else:
            config[field_name] = value
    return config
