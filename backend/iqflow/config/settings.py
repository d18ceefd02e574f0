# /iqflow/config/settings.py

import sys
from typing import List
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Deployment
    environment: str = Field(default="production")
    api_version: str = "v1"
    log_level: str = "INFO"

    # Redis (persisted onboarding snapshots)
    redis_url: str = "redis://localhost:6379"
    redis_key_prefix: str = "iqflow"
    snapshot_ttl_seconds: int = 24 * 60 * 60

    # Platform API (remote endpoints invoked by flow actions)
    platform_api_url: str = "http://localhost:3000"
    platform_api_timeout: float = 15.0
    platform_api_retries: int = 3

    # Flow engine
    max_auto_advance_steps: int = 10
    anonymous_session_hours: int = 24

    # CORS
    cors_allowed_origins: List[str] = Field(
        default=[
            "http://localhost:3000",
        ]
    )

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # ---------------- Validators ---------------- #

    @field_validator("cors_allowed_origins", mode="before")
    @classmethod
    def parse_cors_allowed_origins(cls, v):
        """
        Accept both a comma-separated string and a list, so the value can be
        supplied as a plain environment variable.
        """
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        return v

    @field_validator("platform_api_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")


def validate_environment(settings_obj: Settings):
    try:
        if settings_obj.max_auto_advance_steps < 1:
            raise ValueError("MAX_AUTO_ADVANCE_STEPS must be at least 1")

        if settings_obj.platform_api_retries < 1:
            raise ValueError("PLATFORM_API_RETRIES must be at least 1")

        if settings_obj.environment == "production" and not settings_obj.redis_url:
            raise ValueError("REDIS_URL is required in production")

        return settings_obj

    except Exception as e:
        print(f"--- [ERROR] Environment validation failed: {e}")
        sys.exit(1)


settings = Settings()
validate_environment(settings)
