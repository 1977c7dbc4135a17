from __future__ import annotations

import json

import pytest

from chatkeep.config import CONFIG_ENV, Settings
from chatkeep.errors import ConfigError
from chatkeep.types import ProviderName


def _write(path, payload):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload) if not isinstance(payload, str) else payload, encoding="utf-8")
    return path


def test_defaults_follow_xdg_data_home(tmp_path):
    settings = Settings()
    assert settings.db_path == tmp_path / "data" / "chatkeep" / "chatkeep.db"
    assert settings.attachments_dir == tmp_path / "data" / "chatkeep" / "attachments"
    assert settings.chatgpt.page_size == 50
    assert settings.claude.page_size == 30
    assert settings.perplexity.page_size == 20


def test_json_file_sets_nested_provider_settings(tmp_path):
    path = _write(
        tmp_path / "conf.json",
        {
            "db_path": str(tmp_path / "archive.db"),
            "retry_attempts": 5,
            "claude": {"session_key": "sk", "page_size": 10},
        },
    )

    settings = Settings.load(path)

    assert settings.db_path == tmp_path / "archive.db"
    assert settings.retry_attempts == 5
    assert settings.claude.session_key == "sk"
    assert settings.claude.page_size == 10
    assert settings.provider_settings(ProviderName.CLAUDE) is settings.claude
    assert settings.config_path == path


def test_environment_variables_with_nested_delimiter(monkeypatch):
    monkeypatch.setenv("CHATKEEP_CHATGPT__ACCESS_TOKEN", "tok")
    monkeypatch.setenv("CHATKEEP_FAILED_RETRY_LIMIT", "7")

    settings = Settings.load()

    assert settings.chatgpt.access_token == "tok"
    assert settings.failed_retry_limit == 7


def test_config_env_var_points_at_file(tmp_path, monkeypatch):
    path = _write(tmp_path / "elsewhere.json", {"poll_interval_seconds": 60})
    monkeypatch.setenv(CONFIG_ENV, str(path))

    assert Settings.load().poll_interval_seconds == 60


def test_default_config_file_is_picked_up(tmp_path):
    _write(tmp_path / "config" / "chatkeep" / "config.json", {"download_attachments": True})
    assert Settings.load().download_attachments


@pytest.mark.parametrize(
    "payload",
    [
        "{not json",
        "[1, 2]",
        json.dumps({"retry_attempts": 0}),
        json.dumps({"chatgpt": {"page_size": 1000}}),
    ],
)
def test_invalid_config_files_raise_config_error(tmp_path, payload):
    path = _write(tmp_path / "bad.json", payload)
    with pytest.raises(ConfigError):
        Settings.load(path)


def test_missing_config_file_raises_config_error(tmp_path):
    with pytest.raises(ConfigError):
        Settings.load(tmp_path / "absent.json")
