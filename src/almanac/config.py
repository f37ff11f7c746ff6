"""Configuration loading.

Settings are loaded in priority order (highest first):
  1. Environment variables  (ALMANAC__REGENERATION__BATCH_SIZE=20)
  2. almanac.yaml           (searched in cwd, then platform config dir)
  3. Hardcoded defaults

The config file is optional; all fields have sensible defaults. The only
value that must be supplied for a feature to work is
``regeneration.cron_secret``, which guards the scheduled regeneration endpoint.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Literal

import platformdirs
from pydantic import BaseModel, Field, model_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    YamlConfigSettingsSource,
)

_DEFAULT_DATA_DIR = platformdirs.user_data_dir("almanac")
_DEFAULT_DB_PATH = str(Path(_DEFAULT_DATA_DIR) / "almanac.db")

DEFAULT_WARMING_TOPICS: tuple[str, ...] = (
    # Pregnancy
    "pregnancy nutrition",
    "pregnancy symptoms",
    "prenatal vitamins",
    "morning sickness",
    # Newborn care
    "newborn care",
    "newborn sleep",
    "breastfeeding",
    "bottle feeding",
    "sleep training",
    # Common concerns
    "teething",
    "diaper rash",
    "baby colic",
    "postpartum recovery",
    # Development and feeding
    "baby development milestones",
    "introducing solids",
    "sleep regression",
    "bedtime routine",
    "baby fever",
)


def _find_config_file() -> str | None:
    """Return the path of the first almanac.yaml found, or None."""
    candidates = [
        Path("almanac.yaml"),
        Path(platformdirs.user_config_dir("almanac")) / "almanac.yaml",
    ]
    for path in candidates:
        if path.exists():
            return str(path)
    return None


class ServerSettings(BaseModel):
    transport: Literal["stdio", "http"] = "stdio"
    host: str = "127.0.0.1"
    port: int = 8080
    auth_enabled: bool = True
    auth_key: str = ""


class CacheSettings(BaseModel):
    db_path: str = _DEFAULT_DB_PATH
    ttl_hours: int = Field(default=48, ge=1, le=168)
    low_confidence_ttl_hours: int = Field(default=12, ge=1, le=168)
    low_confidence_threshold: float = Field(default=0.4, ge=0.0, le=1.0)
    min_publish_confidence: float = Field(default=0.3, ge=0.0, le=1.0)
    cleanup_interval_hours: int = Field(default=24, ge=1)

    @model_validator(mode="after")
    def _low_confidence_ttl_not_longer(self) -> CacheSettings:
        if self.low_confidence_ttl_hours > self.ttl_hours:
            raise ValueError("low_confidence_ttl_hours must not exceed ttl_hours")
        return self


class ProviderSettings(BaseModel):
    name: str
    url: str


class GenerationSettings(BaseModel):
    # Tried in order; the first provider to succeed wins.
    providers: list[ProviderSettings] = []
    timeout_seconds: float = Field(default=60.0, gt=0)
    # On-demand generation only: per-slug cooldown and a sliding-window limit.
    cooldown_seconds: float = Field(default=30.0, ge=0)
    rate_limit_max: int = Field(default=10, ge=1)
    rate_limit_window_seconds: float = Field(default=60.0, gt=0)


class RegenerationSettings(BaseModel):
    batch_size: int = Field(default=10, ge=1, le=50)
    delay_ms: int = Field(default=1000, ge=0)
    interval_hours: int = Field(default=6, ge=1)
    enabled: bool = False  # In-process periodic runs (HTTP mode only)
    cron_secret: str = ""


class WarmingSettings(BaseModel):
    topics: list[str] = list(DEFAULT_WARMING_TOPICS)
    concurrency: int = Field(default=1, ge=1, le=10)
    delay_ms: int = Field(default=1000, ge=0)
    skip_existing: bool = True
    on_startup: bool = False


class TaskSettings(BaseModel):
    workers: int = Field(default=2, ge=1)
    queue_size: int = Field(default=100, ge=1)


class LoggingSettings(BaseModel):
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    format: Literal["json", "text"] = "json"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        # Double-underscore separates nesting: ALMANAC__SERVER__PORT=9090
        env_prefix="ALMANAC__",
        env_nested_delimiter="__",
        yaml_file=_find_config_file(),
        yaml_file_encoding="utf-8",
    )

    server: ServerSettings = ServerSettings()
    cache: CacheSettings = CacheSettings()
    generation: GenerationSettings = GenerationSettings()
    regeneration: RegenerationSettings = RegenerationSettings()
    warming: WarmingSettings = WarmingSettings()
    tasks: TaskSettings = TaskSettings()
    logging: LoggingSettings = LoggingSettings()

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
        **kwargs: Any,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return (
            init_settings,  # Constructor args (highest priority)
            env_settings,  # Environment variables
            YamlConfigSettingsSource(settings_cls),  # YAML file
            # dotenv and file secrets intentionally excluded
        )
