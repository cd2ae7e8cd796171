"""Unit tests for Configuration precedence (CLI > env > file > defaults)."""

import json

import pytest

from bdg.config import Configuration


@pytest.fixture
def clean_env(monkeypatch):
    for key in Configuration.DEFAULTS:
        monkeypatch.delenv(f"BDG_{key.upper()}", raising=False)
    return monkeypatch


@pytest.mark.unit
class TestConfigurationPrecedence:
    """Test configuration precedence (CLI > env > file > defaults)."""

    def test_default_values(self):
        config = Configuration()

        assert config.chrome_port == 9222
        assert config.timeout == 30.0
        assert config.max_size == 10_485_760
        assert config.log_level == "INFO"
        assert config.log_format == "text"
        assert config.session_dir == "~/.bdg"
        assert config.worker_timeout == 5.0
        assert config.command_timeout == 10.0
        assert config.fetch_all_bodies is False

    def test_load_from_file(self, tmp_path):
        config_file = tmp_path / ".bdgrc"
        config_file.write_text(json.dumps({"chrome_port": 9333, "timeout": 60.0, "log_level": "DEBUG"}))

        config = Configuration()
        config.load_from_file(str(config_file))

        assert config.chrome_port == 9333
        assert config.timeout == 60.0
        assert config.log_level == "DEBUG"
        # Defaults still apply for unset values
        assert config.max_size == 10_485_760

    def test_load_from_env(self, clean_env):
        clean_env.setenv("BDG_CHROME_PORT", "9444")
        clean_env.setenv("BDG_TIMEOUT", "45.0")
        clean_env.setenv("BDG_SESSION_DIR", "/tmp/bdg-test")
        clean_env.setenv("BDG_FETCH_ALL_BODIES", "true")

        config = Configuration()
        config.load_from_env()

        assert config.chrome_port == 9444
        assert config.timeout == 45.0
        assert config.session_dir == "/tmp/bdg-test"
        assert config.fetch_all_bodies is True

    def test_invalid_env_value_ignored(self, clean_env):
        clean_env.setenv("BDG_CHROME_PORT", "not-a-port")

        config = Configuration()
        config.load_from_env()

        assert config.chrome_port == 9222

    def test_precedence_chain_file_env_cli(self, tmp_path, clean_env):
        config_file = tmp_path / ".bdgrc"
        config_file.write_text(json.dumps({"chrome_port": 9333, "timeout": 60.0}))
        clean_env.setenv("BDG_CHROME_PORT", "9444")
        clean_env.setenv("BDG_LOG_LEVEL", "DEBUG")

        config = Configuration.load(str(config_file), timeout=15.0)

        assert config.chrome_port == 9444  # Env wins over file
        assert config.timeout == 15.0  # CLI wins over file
        assert config.log_level == "DEBUG"  # Env wins (no CLI override)
        assert config.max_size == 10_485_760  # Default

    def test_invalid_config_file_graceful_fallback(self, tmp_path):
        config_file = tmp_path / ".bdgrc"
        config_file.write_text("INVALID JSON{{{")

        config = Configuration()
        config.load_from_file(str(config_file))

        assert config.chrome_port == 9222
        assert config.timeout == 30.0

    def test_non_object_config_file_ignored(self, tmp_path):
        config_file = tmp_path / ".bdgrc"
        config_file.write_text("[1, 2, 3]")

        config = Configuration()
        config.load_from_file(str(config_file))

        assert config.chrome_port == 9222

    def test_nonexistent_config_file_ignored(self):
        config = Configuration()
        config.load_from_file("/nonexistent/path/.bdgrc")

        assert config.chrome_port == 9222

    def test_merge_ignores_none_and_unknown_keys(self):
        config = Configuration()
        config.merge(chrome_port=None, unknown_key="x", timeout=5.0)

        assert config.chrome_port == 9222
        assert config.timeout == 5.0
        assert not hasattr(config, "unknown_key")


@pytest.mark.unit
class TestConfigurationExport:
    def test_round_trip_through_dict(self):
        config = Configuration()
        config.merge(chrome_port=9333, session_dir="/tmp/x", include_all=True)

        rebuilt = Configuration.from_dict(json.loads(json.dumps(config.to_dict())))

        assert rebuilt.to_dict() == config.to_dict()

    def test_from_dict_ignores_session_options(self):
        config = Configuration.from_dict({"url": "https://example.com", "chrome_port": 9500})

        assert config.chrome_port == 9500
        assert "url" not in config.to_dict()

    def test_session_path_expands_user(self):
        config = Configuration()
        config.merge(session_dir="~/custom-bdg")

        assert "~" not in str(config.session_path)
        assert config.session_path.name == "custom-bdg"
