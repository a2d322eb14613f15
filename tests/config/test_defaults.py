"""
Unit tests for config.defaults module.

Tests cover:
- VOICE_* environment overrides on top of YAML values
- Invalid override values being ignored
- Logging defaults
"""

import pytest

from voice_ordering.config.defaults import ENV_OVERRIDES, apply_env_overrides, apply_logging_defaults


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in list(ENV_OVERRIDES) + ["LOG_LEVEL"]:
        monkeypatch.delenv(name, raising=False)


class TestApplyEnvOverrides:
    """Tests for apply_env_overrides function."""

    def test_no_env_leaves_config_untouched(self):
        config_data = {'session': {'max_turns': 20}}

        apply_env_overrides(config_data)

        assert config_data == {'session': {'max_turns': 20}}

    def test_override_casts_and_creates_section(self, monkeypatch):
        monkeypatch.setenv('VOICE_SESSION_MAX_TURNS', '12')
        monkeypatch.setenv('VOICE_REALTIME_GRACE_PERIOD_SECONDS', '7.5')
        config_data = {}

        apply_env_overrides(config_data)

        assert config_data['session'] == {'max_turns': 12}
        assert config_data['realtime'] == {'grace_period_seconds': 7.5}

    def test_override_beats_yaml_value(self, monkeypatch):
        monkeypatch.setenv('VOICE_AUDIO_TEMP_DIR', '/srv/voice-tmp')
        config_data = {'audio': {'temp_dir': '/tmp/yaml', 'max_file_size_mb': 10}}

        apply_env_overrides(config_data)

        assert config_data['audio'] == {'temp_dir': '/srv/voice-tmp', 'max_file_size_mb': 10}

    @pytest.mark.parametrize("raw,expected", [("true", True), ("1", True), ("yes", True), ("off", False), ("0", False)])
    def test_boolean_override(self, monkeypatch, raw, expected):
        monkeypatch.setenv('VOICE_ORDER_REQUIRE_EMAIL', raw)
        config_data = {}

        apply_env_overrides(config_data)

        assert config_data['order']['require_email'] is expected

    def test_invalid_value_ignored(self, monkeypatch):
        """A value that cannot be cast must not block startup."""
        monkeypatch.setenv('VOICE_SESSION_MAX_TURNS', 'many')
        config_data = {'session': {'max_turns': 50}}

        apply_env_overrides(config_data)

        assert config_data['session']['max_turns'] == 50

    def test_blank_value_ignored(self, monkeypatch):
        monkeypatch.setenv('VOICE_ORDER_TAX_RATE', '  ')
        config_data = {}

        apply_env_overrides(config_data)

        assert config_data == {}


class TestApplyLoggingDefaults:
    """Tests for apply_logging_defaults function."""

    def test_default_level(self):
        config_data = {}

        apply_logging_defaults(config_data)

        assert config_data['logging']['level'] == 'info'

    def test_level_from_environment(self, monkeypatch):
        monkeypatch.setenv('LOG_LEVEL', 'debug')
        config_data = {}

        apply_logging_defaults(config_data)

        assert config_data['logging']['level'] == 'debug'

    def test_yaml_level_preserved(self, monkeypatch):
        monkeypatch.setenv('LOG_LEVEL', 'debug')
        config_data = {'logging': {'level': 'warning'}}

        apply_logging_defaults(config_data)

        assert config_data['logging']['level'] == 'warning'
