"""Centralized configuration management using Pydantic settings.

This module provides type-safe, validated configuration loading from:
1. YAML config files (config.yaml + environment overlays)
2. Environment variables (highest precedence)

Usage:
    from snaxel.services.shared.settings import get_settings

    settings = get_settings()
    ttl = settings.cache.ttl_seconds

Environment variables use the ``SNAXEL_`` prefix and ``__`` between nesting
levels, e.g. ``SNAXEL_CACHE__TTL_SECONDS=60`` or
``SNAXEL_SEARCH__DEFAULT_SOURCES='["web", "news"]'``.
"""

import os
from functools import lru_cache
from pathlib import Path
from typing import List, Literal, Optional, Tuple, Type

import yaml
from pydantic import BaseModel, Field, SecretStr, field_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)


# === Search Configuration ===

class SearchConfig(BaseModel):
    """Provider selection and request-surface defaults."""
    provider: Literal["simulated", "remote"] = "simulated"
    default_limit: int = Field(10, ge=1)
    default_sources: List[str] = Field(default_factory=lambda: ["web"])
    engine_url: Optional[str] = None
    engine_timeout_seconds: float = Field(8.0, gt=0)

    @field_validator("default_sources", mode="before")
    def split_sources(cls, v):
        if v is None or v == "":
            return ["web"]
        if isinstance(v, str):
            return [item.strip() for item in v.split(",") if item.strip()]
        return v


# === Cache Configuration ===

class CacheConfig(BaseModel):
    """Result cache configuration."""
    ttl_seconds: float = Field(300.0, gt=0)
    max_entries: Optional[int] = Field(None, ge=1)
    sweep_interval_seconds: float = Field(60.0, ge=0)


# === Concurrency Configuration ===

class ConcurrencyConfig(BaseModel):
    """Fan-out worker pools. Each source gets its own pool of `max_workers` threads."""
    max_workers: int = Field(10, ge=1)
    source_timeout_seconds: float = Field(10.0, gt=0)


# === Server Configuration ===

class ServerConfig(BaseModel):
    """HTTP request surface."""
    host: str = "0.0.0.0"
    port: int = 3000


# === Observability Configuration ===

class SentryConfig(BaseModel):
    """Sentry error tracking configuration."""
    dsn: Optional[SecretStr] = None
    traces_sample_rate: float = 0.1
    environment: str = "development"


class LoggingConfig(BaseModel):
    """Logging configuration."""
    level: str = "INFO"
    format: Literal["json", "text"] = "json"
    directory: Optional[str] = None


class ObservabilityConfig(BaseModel):
    """Observability and monitoring settings."""
    sentry: SentryConfig = Field(default_factory=SentryConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


# === Main Settings ===

class SnaxelSettings(BaseSettings):
    """Main Snaxel configuration."""
    environment: str = "development"
    search: SearchConfig = Field(default_factory=SearchConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    concurrency: ConcurrencyConfig = Field(default_factory=ConcurrencyConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)

    model_config = SettingsConfigDict(
        env_prefix="SNAXEL_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: Type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> Tuple[PydanticBaseSettingsSource, ...]:
        # YAML values arrive as init kwargs; the environment wins over them.
        return env_settings, dotenv_settings, init_settings, file_secret_settings


def _default_config_path() -> Path:
    override = os.getenv("SNAXEL_CONFIG_PATH")
    if override:
        return Path(override)
    project_root = Path(__file__).parent.parent.parent.parent
    return project_root / "config" / "config.yaml"


def _load_yaml_config(config_path: Optional[Path] = None) -> dict:
    """Load configuration from YAML files with environment overlay.

    Args:
        config_path: Path to base config file. If None, uses SNAXEL_CONFIG_PATH
                    or config/config.yaml at the project root.

    Returns:
        Merged configuration dictionary.
    """
    if config_path is None:
        config_path = _default_config_path()

    if not config_path.exists():
        # Return empty dict if no config file found (env vars will be used)
        return {}

    with open(config_path, "r") as f:
        config = yaml.safe_load(f) or {}

    # Load environment-specific overlay
    env = os.getenv("SNAXEL_ENVIRONMENT", config.get("environment", "development"))
    env_config_path = config_path.parent / f"config.{env}.yaml"

    if env_config_path.exists():
        with open(env_config_path, "r") as f:
            env_config = yaml.safe_load(f) or {}
        config = _deep_merge(config, env_config)

    return config


def _deep_merge(base: dict, override: dict) -> dict:
    """Recursively merge override dict into base dict."""
    result = base.copy()

    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value

    return result


@lru_cache(maxsize=1)
def get_settings(config_path: Optional[Path] = None) -> SnaxelSettings:
    """Get cached settings instance.

    Configuration precedence (highest to lowest):
    1. Environment variables (e.g., SNAXEL_CACHE__TTL_SECONDS)
    2. Environment-specific YAML (e.g., config.production.yaml)
    3. Base YAML config (config.yaml)
    """
    return SnaxelSettings(**_load_yaml_config(config_path))


def reload_settings(config_path: Optional[Path] = None) -> SnaxelSettings:
    """Force reload of settings (clears cache).

    Useful for testing or runtime config updates.
    """
    get_settings.cache_clear()
    return get_settings(config_path)
