from __future__ import annotations

from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, HttpUrl, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_RETRY_DELAYS_MS = (0, 2000, 10000, 30000)


class ApiConfig(BaseModel):
    base_url: HttpUrl = Field(default="http://localhost:5000")
    timeout_s: float = Field(default=10.0, ge=0.1)


class ChannelConfig(BaseModel):
    url: str = "ws://localhost:5000/sensorHub"  # ws:// or wss://
    event_name: str = "ReceiveSensorReading"
    heartbeat_s: float = Field(default=10.0, gt=0.0)
    retry_delays_ms: list[int] = Field(default_factory=lambda: list(DEFAULT_RETRY_DELAYS_MS))

    @field_validator("retry_delays_ms")
    @classmethod
    def _check_schedule(cls, value: list[int]) -> list[int]:
        if not value:
            raise ValueError("retry_delays_ms must not be empty")
        if any(d < 0 for d in value):
            raise ValueError("retry_delays_ms must not contain negative delays")
        return value


class StatsConfig(BaseModel):
    average_window: int = Field(default=100, ge=1, le=10_000)
    refresh_interval_s: float = Field(default=30.0, ge=0.0)  # 0 disables periodic refresh
    sensor_type: str | None = None


class ChartsConfig(BaseModel):
    granularity_s: float = Field(default=1.0, gt=0.0)
    bucket_format: str = "%H:%M:%S"
    page_size: int = Field(default=1000, ge=1, le=10_000)


class LoggingConfig(BaseModel):
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    json_logs: bool = Field(default=False, alias="json")

    model_config = ConfigDict(populate_by_name=True)


class AppConfig(BaseSettings):
    """Client configuration; YAML values win over SENSOR_LIVE_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="SENSOR_LIVE_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    api: ApiConfig = Field(default_factory=ApiConfig)
    channel: ChannelConfig = Field(default_factory=ChannelConfig)
    stats: StatsConfig = Field(default_factory=StatsConfig)
    charts: ChartsConfig = Field(default_factory=ChartsConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


def load_config(path: str | Path | None = None) -> AppConfig:
    data: dict = {}
    if path is not None:
        p = Path(path)
        data = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
    return AppConfig(**data)
