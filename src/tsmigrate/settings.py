"""
Runtime configuration.

Values come from a JSON config file passed to load_settings(); environment
variables with the TSM_ prefix (nested keys joined by "__", e.g.
TSM_DESTINATION__DSN) and a local .env file fill in anything the file leaves
unset.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Union

from pydantic import (
    BaseModel,
    Field,
    PositiveFloat,
    PositiveInt,
    ValidationError,
    field_validator,
    model_validator,
)
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ConfigValidationError


class TimeRange(BaseModel):
    start: datetime
    end: datetime

    @field_validator("start", "end")
    @classmethod
    def _assume_utc(cls, v: datetime) -> datetime:
        return v if v.tzinfo is not None else v.replace(tzinfo=timezone.utc)

    @model_validator(mode="after")
    def _ordered(self) -> "TimeRange":
        if self.end <= self.start:
            raise ValueError("time_range.end must be after time_range.start")
        return self


class SourceSettings(BaseModel):
    api_url: str
    user_key: str = ""
    user_key_param: str = "userKey"
    tags: List[str] = Field(default_factory=list)
    tags_file: Optional[Path] = None
    time_range: TimeRange
    request_timeout_sec: PositiveFloat = 30.0
    extra_params: Dict[str, str] = Field(default_factory=dict)


class DestinationSettings(BaseModel):
    dsn: str
    pool_min: PositiveInt = 1
    pool_max: PositiveInt = 10
    connect_timeout: PositiveFloat = 10.0
    table: str = "series_points"
    time_field: str = "time"
    create_hypertable: bool = True

    @model_validator(mode="after")
    def _pool_bounds(self) -> "DestinationSettings":
        if self.pool_max < self.pool_min:
            raise ValueError("destination.pool_max must be >= pool_min")
        return self


class ThreadSettings(BaseModel):
    reader_pool_size: PositiveInt = 4
    writer_pool_size: PositiveInt = 2


class BatchSettings(BaseModel):
    read_size: PositiveInt = 3600
    write_size: PositiveInt = 500


class ProcessingSettings(BaseModel):
    queue_size: PositiveInt = 10_000
    threads: ThreadSettings = Field(default_factory=ThreadSettings)
    batch: BatchSettings = Field(default_factory=BatchSettings)
    enqueue_timeout_sec: PositiveFloat = 30.0
    backpressure_sleep_sec: PositiveFloat = 5.0
    flush_interval_sec: Optional[PositiveFloat] = None


class RetrySettings(BaseModel):
    max_attempts: PositiveInt = 5
    initial_backoff_ms: PositiveInt = 50
    max_backoff_ms: PositiveInt = 2000
    backoff_multiplier: float = Field(default=2.0, ge=1.0)
    jitter: bool = True


class MonitorSettings(BaseModel):
    interval_sec: PositiveFloat = 5.0


class MigratorSettings(BaseSettings):
    """Root settings object (env: TSM_*)."""

    model_config = SettingsConfigDict(
        env_prefix="TSM_",
        env_nested_delimiter="__",
        env_file=".env",
        extra="ignore",
    )

    source: SourceSettings
    destination: DestinationSettings
    processing: ProcessingSettings = Field(default_factory=ProcessingSettings)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    monitor: MonitorSettings = Field(default_factory=MonitorSettings)
    failed_requests_path: Path = Path("failed_requests.ndjson")
    log_level: str = "INFO"
    log_file: Optional[Path] = None
    metrics_port: Optional[int] = Field(default=None, ge=1, le=65535)


def load_settings(path: Optional[Union[str, Path]] = None) -> MigratorSettings:
    """Load settings from a JSON file (optional) plus the environment."""
    data: dict = {}
    if path is not None:
        try:
            data = json.loads(Path(path).read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise ConfigValidationError(f"cannot read config file {path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigValidationError(f"config file {path} must contain a JSON object")
    try:
        return MigratorSettings(**data)
    except ValidationError as e:
        raise ConfigValidationError(f"invalid configuration: {e}") from e


def resolve_tags(settings: MigratorSettings) -> List[str]:
    """Inline tags followed by the tags file, de-duplicated in order."""
    tags = list(settings.source.tags)
    tags_file = settings.source.tags_file
    if tags_file is not None:
        try:
            lines = Path(tags_file).read_text(encoding="utf-8").splitlines()
        except OSError as e:
            raise ConfigValidationError(f"cannot read tags file {tags_file}: {e}") from e
        for line in lines:
            line = line.strip()
            if line and not line.startswith("#"):
                tags.append(line)

    seen = set()
    unique: List[str] = []
    for tag in tags:
        tag = tag.strip()
        if tag and tag not in seen:
            seen.add(tag)
            unique.append(tag)
    if not unique:
        raise ConfigValidationError("no tags configured (source.tags / source.tags_file)")
    return unique
