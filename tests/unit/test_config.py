"""Unit tests for configuration management."""

from __future__ import annotations

import os
from pathlib import Path
from unittest.mock import patch

import pytest

from memoria.config import MemoriaConfig, MemoryConfig


class TestMemoryConfig:
    """Tests for MemoryConfig."""

    def test_defaults(self) -> None:
        """Test default values."""
        config = MemoryConfig()
        assert config.enabled is True
        assert config.instance_name == "unnamed-instance"
        assert config.max_context_items == 3
        assert config.max_context_tokens == 2000
        assert config.min_score == 0.1
        assert config.cache_ttl_seconds == 30.0
        assert config.recent_limit == 50

    def test_positive_validation_invalid(self) -> None:
        """Test count settings must be positive."""
        with pytest.raises(ValueError, match="value must be positive"):
            MemoryConfig(max_context_items=0)

        with pytest.raises(ValueError, match="value must be positive"):
            MemoryConfig(max_context_tokens=-5)

    def test_min_score_validation(self) -> None:
        """Test min_score range validation."""
        assert MemoryConfig(min_score=0.0).min_score == 0.0

        with pytest.raises(ValueError, match="min_score must be between"):
            MemoryConfig(min_score=1.5)

    def test_cache_ttl_validation(self) -> None:
        """Test negative cache TTL is rejected."""
        assert MemoryConfig(cache_ttl_seconds=0).cache_ttl_seconds == 0

        with pytest.raises(ValueError, match="cache_ttl_seconds must not be negative"):
            MemoryConfig(cache_ttl_seconds=-1)

    def test_instance_name_validation(self) -> None:
        """Test instance names must be a single path segment."""
        assert MemoryConfig(instance_name=" support-bot ").instance_name == "support-bot"

        for bad in ["../escape", "a/b", "a\\b", "..", ""]:
            with pytest.raises(ValueError, match="instance_name must be a single path segment"):
                MemoryConfig(instance_name=bad)

    def test_storage_path_expansion(self) -> None:
        """Test that storage_path expands ~."""
        config = MemoryConfig(storage_path="~/memoria/store")
        assert "~" not in config.storage_path
        assert config.storage_path.endswith("memoria/store")


class TestMemoriaConfig:
    """Tests for MemoriaConfig."""

    def test_defaults(self) -> None:
        """Test default values."""
        config = MemoriaConfig()
        assert config.name == "Memoria"
        assert config.log_level == "INFO"
        assert isinstance(config.memory, MemoryConfig)

    def test_log_level_validation_case_insensitive(self) -> None:
        """Test log_level validation is case-insensitive."""
        assert MemoriaConfig(log_level="debug").log_level == "DEBUG"

    def test_log_level_validation_invalid(self) -> None:
        """Test log_level validation with invalid values."""
        with pytest.raises(ValueError, match="log_level must be one of"):
            MemoriaConfig(log_level="INVALID")

    def test_env_override(self) -> None:
        """Test nested memory settings load from MEMORIA_ environment variables."""
        env = {
            "MEMORIA_MEMORY__ENABLED": "false",
            "MEMORIA_MEMORY__INSTANCE_NAME": "from-env",
        }
        with patch.dict(os.environ, env):
            config = MemoriaConfig()

        assert config.memory.enabled is False
        assert config.memory.instance_name == "from-env"

    def test_load_from_yaml(self, tmp_path: Path) -> None:
        """Test loading config from YAML file."""
        yaml_content = """
memoria:
  name: "TestMemoria"
  log_level: "warning"
memory:
  storage_path: "/srv/memory"
  instance_name: "docs-bot"
  max_context_tokens: 1500
"""
        yaml_file = tmp_path / "config.yaml"
        yaml_file.write_text(yaml_content)

        config = MemoriaConfig.load(yaml_path=yaml_file)

        assert config.name == "TestMemoria"
        assert config.log_level == "WARNING"
        assert config.memory.storage_path == "/srv/memory"
        assert config.memory.instance_name == "docs-bot"
        assert config.memory.max_context_tokens == 1500

    def test_load_invalid_yaml(self, tmp_path: Path) -> None:
        """Test broken YAML falls back to defaults."""
        yaml_file = tmp_path / "config.yaml"
        yaml_file.write_text("memory: [unclosed")

        config = MemoriaConfig.load(yaml_path=yaml_file)

        assert config.memory.instance_name == "unnamed-instance"

    def test_load_non_mapping_yaml(self, tmp_path: Path) -> None:
        """Test a YAML file whose top level is not a mapping falls back to defaults."""
        yaml_file = tmp_path / "config.yaml"
        yaml_file.write_text("- just\n- a list\n")

        config = MemoriaConfig.load(yaml_path=yaml_file)

        assert config.name == "Memoria"
        assert config.memory.instance_name == "unnamed-instance"

    def test_load_memory_section_without_memoria(self, tmp_path: Path) -> None:
        """Test a file with only a memory section is applied as-is."""
        yaml_file = tmp_path / "config.yaml"
        yaml_file.write_text("memory:\n  max_context_items: 5\n  enabled: false\n")

        config = MemoriaConfig.load(yaml_path=yaml_file)

        assert config.memory.max_context_items == 5
        assert config.memory.enabled is False
        assert config.log_level == "INFO"

    def test_get_log_config(self) -> None:
        """Test logging dictConfig uses the configured level."""
        config = MemoriaConfig(log_level="DEBUG")
        log_config = config.get_log_config()

        assert log_config["root"]["level"] == "DEBUG"
        assert log_config["handlers"]["console"]["level"] == "DEBUG"
