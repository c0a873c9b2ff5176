"""Collector settings loaded from COLLECTOR_* environment variables."""

from functools import lru_cache

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class CollectorSettings(BaseSettings):
    """Environment-driven settings (COLLECTOR_* variables, optional .env file)."""

    model_config = SettingsConfigDict(
        env_prefix="COLLECTOR_", env_file=".env", case_sensitive=False, extra="ignore"
    )

    # Ingestion API
    api_host: str = "http://localhost:8080"
    api_key: str = Field(..., min_length=1, repr=False)
    request_timeout: float = Field(10.0, gt=0)

    # Batching
    batch_count: int = Field(100, ge=1)
    batch_period: float = Field(5.0, gt=0)
    batch_max_bytes: int = Field(0, ge=0)

    # Delivery
    max_in_flight: int = Field(4, ge=1)
    max_attempts: int = Field(3, ge=1)
    backoff_base: float = Field(0.5, gt=0)
    backoff_max: float = Field(30.0, gt=0)
    backoff_jitter: bool = True
    drain_timeout: float = Field(30.0, ge=0)

    # Dead letters: file path or http(s) URL
    dead_letter_target: str = Field(".dlq/events.ndjson", min_length=1)

    # Probe / metrics server
    http_host: str = "0.0.0.0"
    http_port: int = Field(8081, ge=0, le=65535)

    log_level: str = "INFO"
    log_json: bool = False

    @field_validator("api_host")
    @classmethod
    def _check_host(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError("api_host must be an http(s) URL")
        return v.rstrip("/")

    @model_validator(mode="after")
    def _check_backoff(self) -> "CollectorSettings":
        if self.backoff_max < self.backoff_base:
            raise ValueError("backoff_max must be >= backoff_base")
        return self

    def masked(self) -> dict:
        data = self.model_dump()
        key = data["api_key"]
        data["api_key"] = f"{key[:4]}***" if len(key) > 8 else "***"
        return data


@lru_cache()
def get_settings() -> CollectorSettings:
    return CollectorSettings()
