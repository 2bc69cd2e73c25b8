"""Configuration loading.

Settings are loaded in priority order (highest first):
  1. Environment variables  (FEEDGATE__FETCHER__HOST_CONCURRENCY=5)
  2. feedgate.yaml          (searched in cwd, then platform config dir)
  3. Hardcoded defaults

The config file is optional; all fields have sensible defaults.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Literal

import platformdirs
from pydantic import BaseModel, Field
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    YamlConfigSettingsSource,
)

MIB = 1024 * 1024

_DEFAULT_DATA_DIR = platformdirs.user_data_dir("feedgate")
_DEFAULT_DB_PATH = str(Path(_DEFAULT_DATA_DIR) / "results.db")


def _find_config_file() -> str | None:
    """Return the path of the first feedgate.yaml found, or None."""
    candidates = [
        Path("feedgate.yaml"),
        Path(platformdirs.user_config_dir("feedgate")) / "feedgate.yaml",
    ]
    for path in candidates:
        if path.exists():
            return str(path)
    return None


class ServerSettings(BaseModel):
    host: str = "127.0.0.1"
    port: int = 8787
    auth_enabled: bool = False
    auth_key: str = ""


class FetcherSettings(BaseModel):
    timeout_seconds: float = Field(default=15.0, gt=0)
    global_concurrency: int = Field(default=8, ge=1)
    host_concurrency: int = Field(default=3, ge=1)
    max_redirects: int = Field(default=5, ge=0)
    # Cap for feed documents and raw HTML pages
    document_max_bytes: int = 10 * MIB
    user_agent: str = "feedgate/1.0"


class ImageSettings(BaseModel):
    max_bytes: int = 6 * MIB
    cache_ttl_seconds: float = 15 * 60
    cache_capacity: int = Field(default=200, ge=1)
    quality: int = Field(default=82, ge=1, le=100)


class TtsSettings(BaseModel):
    audio_max_bytes: int = 25 * MIB
    json_body_max_bytes: int = 64 * 1024
    default_api_base: str = "https://dashscope.aliyuncs.com/api/v1"
    default_model: str = "qwen3-tts-flash"
    default_voice: str = "Cherry"


class AiSettings(BaseModel):
    default_api_base: str = "https://api.openai.com/v1"
    timeout_seconds: float = Field(default=20.0, gt=0)
    max_retries: int = Field(default=2, ge=0)
    max_response_bytes: int = 2 * MIB
    temperature: float = 0.2


class CacheSettings(BaseModel):
    """Persistent store for AI summaries and translations."""

    db_path: str = _DEFAULT_DB_PATH
    ttl_hours: int = Field(default=7 * 24, ge=1)
    cleanup_interval_hours: int = Field(default=6, ge=1)


class LoggingSettings(BaseModel):
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    format: Literal["json", "text"] = "json"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        # Double-underscore separates nesting: FEEDGATE__SERVER__PORT=9090
        env_prefix="FEEDGATE__",
        env_nested_delimiter="__",
        yaml_file=_find_config_file(),
        yaml_file_encoding="utf-8",
    )

    server: ServerSettings = ServerSettings()
    fetcher: FetcherSettings = FetcherSettings()
    image: ImageSettings = ImageSettings()
    tts: TtsSettings = TtsSettings()
    ai: AiSettings = AiSettings()
    cache: CacheSettings = CacheSettings()
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
