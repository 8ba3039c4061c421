# tests/Sync_Endpoint/test_server_config.py
#
# Imports
import pytest
#
# Local Imports
from stream_sync_API.app.core.config import load_settings, DEFAULT_PORT, DEFAULT_RATE_LIMIT
#
########################################################################################################################
#
# Functions:

ENV_VARS = ["STREAM_SYNC_DB", "HOST", "PORT", "LOG_LEVEL", "ALLOWED_ORIGINS", "MAX_BODY_BYTES",
            "SYNC_RATE_LIMIT", "RATE_LIMIT_ENABLED"]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


def test_defaults_without_config_file(tmp_path):
    settings = load_settings(tmp_path / "missing.txt")
    assert settings["SYNC_DB_PATH"] == "stream-sync.db"
    assert settings["PORT"] == DEFAULT_PORT
    assert settings["RATE_LIMIT"] == DEFAULT_RATE_LIMIT
    assert settings["RATE_LIMIT_ENABLED"] is True
    assert settings["ALLOWED_ORIGINS"] == ["*"]
    assert settings["MAX_BODY_BYTES"] == 1024 * 1024


def test_config_file_values(tmp_path):
    config_path = tmp_path / "config.txt"
    config_path.write_text(
        "[Server]\n"
        "db_path = /data/sync.db\n"
        "port = 5050\n"
        "allowed_origins = https://a.example, https://b.example\n"
        "rate_limit_enabled = false\n"
        "log_level = debug\n",
        encoding="utf-8",
    )
    settings = load_settings(config_path)
    assert settings["SYNC_DB_PATH"] == "/data/sync.db"
    assert settings["PORT"] == 5050
    assert settings["ALLOWED_ORIGINS"] == ["https://a.example", "https://b.example"]
    assert settings["RATE_LIMIT_ENABLED"] is False
    assert settings["LOG_LEVEL"] == "DEBUG"


def test_environment_overrides_file(tmp_path, monkeypatch):
    config_path = tmp_path / "config.txt"
    config_path.write_text("[Server]\nport = 5050\ndb_path = file.db\n", encoding="utf-8")
    monkeypatch.setenv("PORT", "6060")
    monkeypatch.setenv("STREAM_SYNC_DB", "env.db")
    monkeypatch.setenv("SYNC_RATE_LIMIT", "5/second")
    settings = load_settings(config_path)
    assert settings["PORT"] == 6060
    assert settings["SYNC_DB_PATH"] == "env.db"
    assert settings["RATE_LIMIT"] == "5/second"
