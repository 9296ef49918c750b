"""Recovery timing configuration via environment variables."""

from typing import Self

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings


class RecoverySettings(BaseSettings):
    model_config = {"env_prefix": "RECOVERY_"}

    autosave_interval_seconds: float = Field(default=30.0, gt=0)
    debounce_seconds: float = Field(default=3.0, ge=0)
    heartbeat_interval_seconds: float = Field(default=5.0, gt=0)
    # Snapshots younger than this are reported as recent
    recent_window_seconds: float = Field(default=300.0, gt=0)
    # Snapshots older than this are discarded instead of restored
    max_age_seconds: float = Field(default=600.0, gt=0)
    # A heartbeat older than this means the previous process died without stopping
    crash_window_seconds: float = Field(default=10.0, gt=0)
    cache_namespace: str = Field(default="recovery", pattern=r"^[A-Za-z0-9_-]{1,50}$")
    memory_cache_size: int = Field(default=100, ge=1)

    @model_validator(mode="after")
    def _check_windows(self) -> Self:
        if self.recent_window_seconds > self.max_age_seconds:
            raise ValueError("recent_window_seconds must not exceed max_age_seconds")
        if self.heartbeat_interval_seconds >= self.crash_window_seconds:
            raise ValueError("heartbeat_interval_seconds must be shorter than crash_window_seconds")
        return self
