import json

import pytest

from binupdates.utils.config import (
    DEFAULT_GLOBAL_INDEX,
    build_update_config,
    deep_merge,
    effective_settings,
    load_global_index,
    load_json_index,
    module_enabled,
)
from binupdates.utils.notifier import WebhookNotifier
from binupdates.utils.release_source import GitHubReleaseSource, StaticReleaseSource
from binupdates.utils.service_manager import NullServiceManager, SystemctlServiceManager

YTDLP_INDEX = {
    "metadata": {"module_name": "ytdlp", "schema_version": "1.0.0", "enabled": True},
    "config": {
        "binary_path": "/usr/local/bin/yt-dlp",
        "service_name": None,
        "release": {"type": "github", "repo": "yt-dlp/yt-dlp", "asset_pattern": "^yt-dlp_linux$"},
    },
}

FILEBROWSER_INDEX = {
    "metadata": {"module_name": "filebrowser", "enabled": True},
    "config": {
        "binary_path": "/usr/local/bin/filebrowser",
        "service_name": "filebrowser",
        "version_args": ["version"],
        "min_artifact_size": 1048576,
        "release": {"type": "static", "url": "https://example.com/linux-amd64-filebrowser"},
        "notifications": {"notify_on_noop": True},
        "timeouts": {"start_settle": 5},
    },
}


@pytest.fixture(autouse=True)
def no_env_webhook(monkeypatch):
    monkeypatch.delenv("BINUPDATES_WEBHOOK_URL", raising=False)


def test_deep_merge_keeps_unrelated_keys():
    base = {"a": {"b": 1, "c": 2}, "d": 3}

    merged = deep_merge(base, {"a": {"b": 10}})

    assert merged == {"a": {"b": 10, "c": 2}, "d": 3}
    assert base["a"]["b"] == 1


def test_load_json_index_missing_returns_defaults(tmp_path):
    assert load_json_index(tmp_path, {"x": 1}) == {"x": 1}


def test_load_json_index_invalid_returns_defaults(tmp_path):
    (tmp_path / "index.json").write_text("{not json")

    assert load_json_index(tmp_path, {"x": 1}) == {"x": 1}


def test_load_json_index_merges_over_defaults(tmp_path):
    (tmp_path / "index.json").write_text(json.dumps({"config": {"service_name": "other"}}))

    data = load_json_index(tmp_path, {"config": {"service_name": "fb", "binary_path": "/bin/fb"}})

    assert data["config"] == {"service_name": "other", "binary_path": "/bin/fb"}


def test_packaged_global_index_loads():
    data = load_global_index()

    assert data["config"]["lock_dir"] == DEFAULT_GLOBAL_INDEX["config"]["lock_dir"]
    assert data["config"]["notifications"]["notify_on_noop"] is False


def test_module_settings_override_global():
    settings = effective_settings(FILEBROWSER_INDEX, DEFAULT_GLOBAL_INDEX)

    assert settings["notifications"]["notify_on_noop"] is True
    assert settings["notifications"]["payload_format"] == "json"
    assert settings["timeouts"]["start_settle"] == 5
    assert settings["timeouts"]["download"] == 300


def test_build_config_for_service_module():
    config = build_update_config(FILEBROWSER_INDEX, DEFAULT_GLOBAL_INDEX)

    assert config.name == "filebrowser"
    assert str(config.binary_path) == "/usr/local/bin/filebrowser"
    assert isinstance(config.release_source, StaticReleaseSource)
    assert isinstance(config.service_manager, SystemctlServiceManager)
    assert config.version_args == ["version"]
    assert config.notify_on_noop is True
    assert config.start_settle_seconds == 5
    assert config.min_artifact_size == 1048576
    assert config.notifier is None


def test_build_config_for_cli_module():
    config = build_update_config(YTDLP_INDEX, DEFAULT_GLOBAL_INDEX)

    assert config.service_name is None
    assert isinstance(config.service_manager, NullServiceManager)
    assert isinstance(config.release_source, GitHubReleaseSource)
    assert config.release_source.timeout == 30
    assert config.release_source.session is config.http_session


def test_build_config_with_webhook():
    global_index = deep_merge(DEFAULT_GLOBAL_INDEX,
                              {"config": {"notifications": {"webhook_url": "https://hooks.example.com/x"}}})

    config = build_update_config(YTDLP_INDEX, global_index)

    assert isinstance(config.notifier, WebhookNotifier)
    assert config.notifier.session is config.http_session


def test_module_enabled_defaults_true():
    assert module_enabled({})
    assert not module_enabled({"metadata": {"enabled": False}})
