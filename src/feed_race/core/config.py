from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    endpoints_file: Path = Field(default=Path("./config/endpoints.json"))

    run_duration_seconds: int = Field(default=30, ge=1)
    warmup_fraction: float = Field(default=1 / 3, gt=0, le=1)
    warmup_ceiling_seconds: float = Field(default=5.0, gt=0)
    keepalive_interval_seconds: float = Field(default=5.0, gt=0)
    progress_interval_seconds: int = Field(default=5, ge=1)

    bucket_horizon: int = Field(default=100, ge=1)
    min_quorum: int = Field(default=2, ge=2)

    subscription: Literal["slot", "block"] = Field(default="slot")
    commitment: str = Field(default="processed")
    connect_timeout_seconds: float = Field(default=10.0, gt=0)
    max_message_bytes: int = Field(default=2**24, ge=1024)

    probe_timeout_seconds: int = Field(default=10, ge=1)
    probe_max_retries: int = Field(default=3, ge=1)

    log_level: str = Field(default="INFO")

    model_config = SettingsConfigDict(
        env_prefix="FEED_RACE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    def warmup_seconds(self, run_duration_seconds: float | None = None) -> float:
        duration = self.run_duration_seconds if run_duration_seconds is None else run_duration_seconds
        return min(duration * self.warmup_fraction, self.warmup_ceiling_seconds)
