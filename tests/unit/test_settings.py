"""Unit tests for settings loading."""

from unittest.mock import patch

import pytest
import yaml

from workstreams.errors import ConfigurationError
from workstreams.settings import (
    WorkstreamSettings,
    _load_settings_file,
    load_settings,
)


@pytest.fixture
def settings_file(tmp_path):
    """Point the settings loader at a temporary YAML file."""
    path = tmp_path / "settings.yaml"
    _load_settings_file.cache_clear()
    with patch("workstreams.settings._settings_path", return_value=path):
        yield path
    _load_settings_file.cache_clear()


class TestLoadSettings:
    def test_missing_file_uses_defaults(self, settings_file):
        settings = load_settings()
        assert settings == WorkstreamSettings()

    def test_yaml_overrides_defaults(self, settings_file):
        settings_file.write_text(yaml.dump({"failure_threshold": 5, "log_level": "DEBUG"}))
        settings = load_settings()
        assert settings.failure_threshold == 5
        assert settings.log_level == "DEBUG"
        assert settings.backoff_cap_seconds == 300

    def test_environment_overrides_yaml(self, settings_file, monkeypatch):
        settings_file.write_text(yaml.dump({"failure_threshold": 5}))
        monkeypatch.setenv("WORKSTREAMS_FAILURE_THRESHOLD", "7")
        monkeypatch.setenv("WORKSTREAMS_POLL_TIMEOUT_SECONDS", "1.5")
        settings = load_settings()
        assert settings.failure_threshold == 7
        assert settings.poll_timeout_seconds == 1.5

    def test_explicit_overrides_win(self, settings_file, monkeypatch):
        monkeypatch.setenv("WORKSTREAMS_SERVER_PORT", "9000")
        settings = load_settings({"server_port": 9100})
        assert settings.server_port == 9100

    def test_unknown_yaml_keys_are_ignored(self, settings_file):
        settings_file.write_text(yaml.dump({"colour_scheme": "dark"}))
        assert load_settings() == WorkstreamSettings()

    def test_unknown_override_is_rejected(self, settings_file):
        with pytest.raises(ConfigurationError, match="Unknown setting"):
            load_settings({"colour_scheme": "dark"})

    def test_malformed_yaml(self, settings_file):
        settings_file.write_text("failure_threshold: [unclosed\n")
        with pytest.raises(ConfigurationError, match="Failed to parse"):
            load_settings()

    def test_non_mapping_yaml(self, settings_file):
        settings_file.write_text(yaml.dump(["a", "b"]))
        with pytest.raises(ConfigurationError, match="mapping"):
            load_settings()

    def test_uncoercible_value(self, settings_file, monkeypatch):
        monkeypatch.setenv("WORKSTREAMS_FAILURE_THRESHOLD", "three")
        with pytest.raises(ConfigurationError, match="failure_threshold"):
            load_settings()


class TestValidation:
    def test_threshold_must_be_positive(self):
        with pytest.raises(ConfigurationError):
            WorkstreamSettings(failure_threshold=0)

    def test_worker_threads_must_be_positive(self):
        with pytest.raises(ConfigurationError, match="max_worker_threads"):
            WorkstreamSettings(max_worker_threads=0)

    def test_default_limit_within_max(self):
        with pytest.raises(ConfigurationError):
            WorkstreamSettings(conversation_default_limit=600, conversation_max_limit=500)

    def test_memory_database_path_is_kept(self):
        assert WorkstreamSettings(database_path=":memory:").resolved_database_path == ":memory:"

    def test_database_path_expands_home(self):
        resolved = WorkstreamSettings(database_path="~/ws.db").resolved_database_path
        assert not resolved.startswith("~")
