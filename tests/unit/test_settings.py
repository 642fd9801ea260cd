"""Tests for storesync.lib.config - runtime settings resolution."""

import os

import pytest

from storesync.lib.api import DEFAULT_USER_AGENT
from storesync.lib.config import DEFAULT_RESOURCES, RuntimeSettings, load_settings
from storesync.lib.errors import ConfigurationError


@pytest.fixture(autouse=True)
def isolated_env(tmp_path, monkeypatch):
    """Run every test away from any real .env file and STORESYNC_* variables."""
    monkeypatch.chdir(tmp_path)
    for name in list(os.environ):
        if name.startswith("STORESYNC_"):
            monkeypatch.delenv(name)


class TestRuntimeSettings:
    """Tests for defaults and validation."""

    def test_defaults(self):
        settings = RuntimeSettings()

        assert settings.stores_file == "./stores.jsonl"
        assert settings.output_dir == "./out"
        assert settings.dry_run is False
        assert settings.api_version == "2020-04"
        assert settings.http_timeout == 300.0
        assert settings.retry_count == 10
        assert settings.retry_delay == 0.1
        assert settings.retry_jitter == 0.1
        assert settings.resources == DEFAULT_RESOURCES
        assert settings.max_workers == 8
        assert settings.log_level == "INFO"

    def test_env_prefix(self, monkeypatch):
        monkeypatch.setenv("STORESYNC_RETRY_COUNT", "5")
        monkeypatch.setenv("STORESYNC_OUTPUT_DIR", "/data/stores")

        settings = RuntimeSettings()

        assert settings.retry_count == 5
        assert settings.output_dir == "/data/stores"

    def test_dotenv_file(self, tmp_path):
        (tmp_path / ".env").write_text("STORESYNC_API_VERSION=2021-07\n")

        assert RuntimeSettings().api_version == "2021-07"

    def test_resources_from_comma_string(self):
        settings = RuntimeSettings(resources="orders, products")

        assert settings.resources == ["orders", "products"]

    def test_client_options(self):
        options = RuntimeSettings(retry_count=3, http_timeout=10).client_options()

        assert options.retry_count == 3
        assert options.timeout == 10
        assert options.user_agent == DEFAULT_USER_AGENT

    def test_log_level_normalized(self):
        assert RuntimeSettings(log_level="debug").log_level == "DEBUG"


class TestLoadSettings:
    """Tests for load_settings() precedence and errors."""

    def test_yaml_beats_env(self, tmp_path, monkeypatch):
        monkeypatch.setenv("STORESYNC_RETRY_COUNT", "5")
        config = tmp_path / "storesync.yaml"
        config.write_text("retry_count: 7\nresources: [orders]\n")

        settings = load_settings(config)

        assert settings.retry_count == 7
        assert settings.resources == ["orders"]

    def test_overrides_beat_yaml(self, tmp_path):
        config = tmp_path / "storesync.yaml"
        config.write_text("retry_count: 7\n")

        settings = load_settings(config, retry_count=2, output_dir=None)

        assert settings.retry_count == 2
        assert settings.output_dir == "./out"

    def test_invalid_value(self):
        with pytest.raises(ConfigurationError) as exc_info:
            load_settings(retry_count=0)

        assert exc_info.value.field == "retry_count"

    def test_empty_resources(self):
        with pytest.raises(ConfigurationError, match="at least one resource"):
            load_settings(resources=[])

    def test_missing_yaml(self, tmp_path):
        with pytest.raises(ConfigurationError, match="settings file not found"):
            load_settings(tmp_path / "missing.yaml")

    def test_yaml_must_be_mapping(self, tmp_path):
        config = tmp_path / "storesync.yaml"
        config.write_text("- orders\n")

        with pytest.raises(ConfigurationError, match="must contain a mapping"):
            load_settings(config)

    def test_empty_yaml(self, tmp_path):
        config = tmp_path / "storesync.yaml"
        config.write_text("")

        assert load_settings(config).retry_count == 10
