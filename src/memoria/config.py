"""Memoria configuration management.

Loads configuration from .env files and YAML config files, merges them,
and provides validated settings via pydantic models.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class MemoryConfig(BaseModel):
    """Configuration for one conversation memory instance."""

    enabled: bool = True
    storage_path: str = "./memory"
    instance_name: str = "unnamed-instance"

    max_context_items: int = 3
    max_context_tokens: int = 2000
    min_score: float = 0.1

    cache_ttl_seconds: float = 30.0
    recent_limit: int = 50
    max_keywords: int = 10

    @field_validator("max_context_items", "max_context_tokens", "recent_limit", "max_keywords")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        """Ensure count-like settings are positive."""
        if v <= 0:
            raise ValueError("value must be positive")
        return v

    @field_validator("min_score")
    @classmethod
    def validate_min_score(cls, v: float) -> float:
        """Ensure min_score is in valid range."""
        if not 0.0 <= v <= 1.0:
            raise ValueError("min_score must be between 0.0 and 1.0")
        return v

    @field_validator("cache_ttl_seconds")
    @classmethod
    def validate_cache_ttl(cls, v: float) -> float:
        """Ensure cache TTL is not negative."""
        if v < 0:
            raise ValueError("cache_ttl_seconds must not be negative")
        return v

    @field_validator("instance_name")
    @classmethod
    def validate_instance_name(cls, v: str) -> str:
        """Instance names become directory names, so keep them to one path segment."""
        v = v.strip()
        if not v or v in (".", "..") or "/" in v or "\\" in v:
            raise ValueError(f"instance_name must be a single path segment, got {v!r}")
        return v

    @model_validator(mode="after")
    def expand_storage_path(self) -> "MemoryConfig":
        """Expand user home directory in storage_path."""
        self.storage_path = str(Path(self.storage_path).expanduser())
        return self


class MemoriaConfig(BaseSettings):
    """
    Memoria's main configuration.

    Loads from:
    1. .env file (via pydantic-settings)
    2. YAML config files (via load() classmethod)
    3. Environment variables with MEMORIA_ prefix

    Values read from YAML are passed as init arguments, so they take
    precedence over environment variables for the keys they set.
    """

    model_config = SettingsConfigDict(
        env_prefix="MEMORIA_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
    )

    log_level: str = "INFO"
    name: str = "Memoria"
    version: str = "0.1.0"

    memory: MemoryConfig = Field(default_factory=MemoryConfig)

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Ensure log_level is valid."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in valid_levels:
            raise ValueError(f"log_level must be one of {valid_levels}")
        return v.upper()

    @classmethod
    def load(
        cls,
        yaml_path: Path | str | None = None,
        env_file: str | None = ".env",
    ) -> "MemoriaConfig":
        """
        Load configuration from YAML and environment.

        Args:
            yaml_path: Path to YAML config file. If None, searches default locations.
            env_file: Path to .env file.

        Returns:
            Validated MemoriaConfig instance.
        """
        yaml_file = cls._find_yaml_config(yaml_path)

        yaml_data: dict[str, Any] = {}
        if yaml_file and yaml_file.exists():
            yaml_data = cls._load_yaml_file(yaml_file)
            logger.debug(f"Loaded config from {yaml_file}")

        # Core settings live under 'memoria'; other top-level keys
        # (e.g. 'memory') sit beside it.
        settings = dict(yaml_data.get("memoria") or {})
        settings.update({k: v for k, v in yaml_data.items() if k != "memoria"})

        if env_file and not Path(env_file).exists():
            env_file = None

        return cls(_env_file=env_file, **settings)

    @classmethod
    def _find_yaml_config(cls, yaml_path: Path | str | None) -> Path | None:
        """Find the YAML config file to load."""
        if yaml_path:
            return Path(yaml_path)

        default_locations = [
            Path("config/default.yaml"),
            Path("config/default.yml"),
            Path.home() / ".memoria" / "config.yaml",
            Path("/etc/memoria/config.yaml"),
        ]

        for location in default_locations:
            if location.exists():
                return location

        return None

    @classmethod
    def _load_yaml_file(cls, path: Path) -> dict[str, Any]:
        """Load YAML file and return its top-level mapping."""
        try:
            with path.open("r") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            logger.warning(f"Failed to parse YAML file {path}: {e}")
            return {}

        if not isinstance(data, dict):
            logger.warning(f"Ignoring YAML file {path}: top level is not a mapping")
            return {}
        return data

    def get_log_config(self) -> dict[str, Any]:
        """Get logging configuration dict for use with logging.config."""
        return {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "standard": {
                    "format": "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
                    "datefmt": "%Y-%m-%d %H:%M:%S",
                },
            },
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "level": self.log_level,
                    "formatter": "standard",
                },
            },
            "root": {
                "level": self.log_level,
                "handlers": ["console"],
            },
        }
