"""Tests for environment-driven settings."""

from unittest.mock import patch

import pytest

from loom.__main__ import main
from loom.config import Settings
from loom.models import DAY_MS, GenerationSettings

_ENV_VARS = [
    "LOOM_MODEL",
    "LOOM_SYSTEM_PROMPT",
    "LOOM_MAX_TOKENS",
    "LOOM_TEMPERATURE",
    "LOOM_EXTENDED_THINKING",
    "LOOM_THINKING_BUDGET",
    "LOOM_DB_PATH",
    "LOOM_PROVIDER",
    "LOOM_CORS_ORIGINS",
    "LOOM_RETENTION_DAYS",
    "LOOM_HOST",
    "LOOM_PORT",
]


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)


class TestSettings:
    def test_defaults(self):
        settings = Settings.from_env(env_file=None)
        assert settings.db_path == "loom.db"
        assert settings.default_provider == "anthropic"
        assert settings.generation == GenerationSettings()
        assert settings.retention_ms == 7 * DAY_MS
        assert (settings.host, settings.port) == ("127.0.0.1", 8000)

    def test_generation_overrides(self, monkeypatch):
        monkeypatch.setenv("LOOM_MODEL", "claude-haiku-4-5-20251001")
        monkeypatch.setenv("LOOM_MAX_TOKENS", "256")
        monkeypatch.setenv("LOOM_TEMPERATURE", "0.2")
        monkeypatch.setenv("LOOM_EXTENDED_THINKING", "true")
        monkeypatch.setenv("LOOM_THINKING_BUDGET", "1024")
        settings = Settings.from_env(env_file=None)
        assert settings.generation.model == "claude-haiku-4-5-20251001"
        assert settings.generation.max_tokens == 256
        assert settings.generation.temperature == 0.2
        assert settings.generation.extended_thinking is True
        assert settings.generation.thinking_budget == 1024

    def test_empty_system_prompt_disables_it(self, monkeypatch):
        monkeypatch.setenv("LOOM_SYSTEM_PROMPT", "")
        assert Settings.from_env(env_file=None).generation.system_prompt is None

    def test_server_overrides(self, monkeypatch):
        monkeypatch.setenv("LOOM_DB_PATH", "/tmp/x.db")
        monkeypatch.setenv("LOOM_PROVIDER", "bedrock")
        monkeypatch.setenv("LOOM_CORS_ORIGINS", "http://a, http://b")
        monkeypatch.setenv("LOOM_RETENTION_DAYS", "3")
        monkeypatch.setenv("LOOM_HOST", "0.0.0.0")
        monkeypatch.setenv("LOOM_PORT", "9001")
        settings = Settings.from_env(env_file=None)
        assert settings.db_path == "/tmp/x.db"
        assert settings.default_provider == "bedrock"
        assert settings.cors_origins == ["http://a", "http://b"]
        assert settings.retention_ms == 3 * DAY_MS
        assert (settings.host, settings.port) == ("0.0.0.0", 9001)

    def test_reads_env_file(self, tmp_path, monkeypatch):
        # Registers LOOM_MODEL with monkeypatch so the value loaded below is undone
        monkeypatch.setenv("LOOM_MODEL", "unset")
        monkeypatch.delenv("LOOM_MODEL")
        env_file = tmp_path / ".env"
        env_file.write_text("LOOM_MODEL=from-file\n")
        assert Settings.from_env(env_file=env_file).generation.model == "from-file"


class TestEntryPoint:
    def test_serves_app_on_configured_address(self, monkeypatch):
        monkeypatch.setenv("LOOM_PORT", "9002")
        with patch("loom.__main__.uvicorn.run") as run:
            main()
        run.assert_called_once_with("loom.main:app", host="127.0.0.1", port=9002)
