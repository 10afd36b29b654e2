"""
Configuration loading and validation.

Loads notifier configuration from a YAML file. The Discord token is read
from the environment variable named in the config, never from the file, and
WAFFLECORD_SUBSCRIBERS_DIR overrides the subscribers directory.
"""

from __future__ import annotations

import os
from datetime import datetime, tzinfo
from pathlib import Path
from typing import Literal
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml
from pydantic import BaseModel, Field, field_validator

from .schedule import WEEKDAY_NAMES, WeeklyTrigger

SUBSCRIBERS_DIR_ENV = "WAFFLECORD_SUBSCRIBERS_DIR"
LOCALTIME_PATH = "/etc/localtime"


class DiscordConfig(BaseModel):
    api_url: str = "https://discord.com/api/v10"
    token_env: str = "DISCORD_TOKEN"
    request_timeout_seconds: float = 30.0
    max_retries: int = Field(default=3, ge=0)

    @property
    def token(self) -> str | None:
        return os.environ.get(self.token_env)


class StoreConfig(BaseModel):
    subscribers_dir: str = "./data/subscribers"


class ScheduleConfig(BaseModel):
    weekday: int = 2
    hour: int = Field(default=12, ge=0, le=23)
    minute: int = Field(default=0, ge=0, le=59)
    second: int = Field(default=0, ge=0, le=59)
    # IANA name; empty means the host's local zone
    timezone: str = ""

    @field_validator("weekday", mode="before")
    @classmethod
    def _parse_weekday(cls, value: object) -> int:
        if isinstance(value, str):
            name = value.strip().lower()
            for index, full in enumerate(WEEKDAY_NAMES):
                if name in (full, full[:3]):
                    return index
            if name.isdigit():
                value = int(name)
            else:
                raise ValueError(f"unknown weekday: {value!r}")
        if isinstance(value, bool) or not isinstance(value, int) or not 0 <= value <= 6:
            raise ValueError(f"weekday must be a day name or 0..6 (0 = Monday), got {value!r}")
        return value

    @field_validator("timezone")
    @classmethod
    def _check_timezone(cls, value: str) -> str:
        value = value.strip()
        if value:
            try:
                ZoneInfo(value)
            except (ZoneInfoNotFoundError, ValueError) as exc:
                raise ValueError(f"unknown timezone: {value!r}") from exc
        return value

    def resolve_timezone(self) -> tzinfo:
        if self.timezone:
            return ZoneInfo(self.timezone)
        return local_timezone()

    def to_trigger(self) -> WeeklyTrigger:
        return WeeklyTrigger(
            weekday=self.weekday,
            hour=self.hour,
            minute=self.minute,
            second=self.second,
            tz=self.resolve_timezone(),
        )


class NotificationConfig(BaseModel):
    default_group_label: str = "Waflers"
    create_threads: bool = True
    max_concurrency: int = Field(default=5, ge=1)
    send_timeout_seconds: float = Field(default=60.0, gt=0)


class LoggingConfig(BaseModel):
    level: str = "info"
    format: Literal["json", "text"] = "json"


class MetricsConfig(BaseModel):
    enabled: bool = True
    host: str = "127.0.0.1"
    port: int = 9090


class NotifierConfig(BaseModel):
    discord: DiscordConfig = Field(default_factory=DiscordConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    schedule: ScheduleConfig = Field(default_factory=ScheduleConfig)
    notifications: NotificationConfig = Field(default_factory=NotificationConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    metrics: MetricsConfig = Field(default_factory=MetricsConfig)


def local_timezone() -> tzinfo:
    """The host's zone with DST rules when available, else its current fixed offset."""
    try:
        with open(LOCALTIME_PATH, "rb") as f:
            return ZoneInfo.from_file(f, key="localtime")
    except (OSError, ValueError):
        return datetime.now().astimezone().tzinfo


def apply_env_overrides(config: NotifierConfig) -> NotifierConfig:
    subscribers_dir = os.environ.get(SUBSCRIBERS_DIR_ENV)
    if subscribers_dir:
        config.store.subscribers_dir = subscribers_dir
    return config


def load_config(path: str | Path) -> NotifierConfig:
    """Load and validate notifier configuration from a YAML file."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(path) as f:
        raw = yaml.safe_load(f) or {}

    return apply_env_overrides(NotifierConfig.model_validate(raw))
