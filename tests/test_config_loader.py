import json
from pathlib import Path

from feedback_bridge.config.loader import get_config_path, load_config, save_config
from feedback_bridge.config.schema import Config


def test_missing_file_yields_defaults(tmp_path: Path):
    config = load_config(tmp_path / "absent.json")

    assert config.cadence.intensive_interval == 3.0
    assert config.cadence.intensive_duration == 60.0
    assert config.cadence.pause_interval == 15.0
    assert config.hybrid.webhook_timeout == 5.0
    assert config.hybrid.fallback_after_failures == 3
    assert config.hybrid.health_check_interval == 300.0
    assert config.polling.normal_interval == 5.0
    assert config.webhook.port_min == 3000


def test_file_values_load_and_env_wins(tmp_path: Path, monkeypatch):
    path = tmp_path / "config.json"
    path.write_text(
        json.dumps({"slack": {"bot_token": "xoxb-file", "bot_user_id": "UFILE"}, "cadence": {"pause_interval": 20}}),
        encoding="utf-8",
    )
    monkeypatch.setenv("FEEDBACK_BRIDGE_SLACK__BOT_TOKEN", "xoxb-env")

    config = load_config(path)

    assert config.slack.bot_token == "xoxb-env"
    assert config.slack.bot_user_id == "UFILE"
    assert config.cadence.pause_interval == 20


def test_invalid_file_falls_back_to_defaults(tmp_path: Path):
    path = tmp_path / "config.json"
    path.write_text("{broken", encoding="utf-8")
    assert load_config(path).relay.enabled is False

    path.write_text(json.dumps({"hybrid": {"webhook_timeout": 0.1}}), encoding="utf-8")
    assert load_config(path).hybrid.webhook_timeout == 5.0


def test_save_then_load(tmp_path: Path):
    config = Config()
    config.relay.enabled = True
    config.relay.url = "https://relay.test"
    path = save_config(config, tmp_path / "nested" / "config.json")

    assert path.exists()
    assert load_config(path).relay.url == "https://relay.test"


def test_config_path_follows_data_dir(tmp_path: Path, monkeypatch):
    monkeypatch.setenv("FEEDBACK_BRIDGE_DATA_DIR", str(tmp_path / "data"))
    assert get_config_path() == tmp_path / "data" / "config.json"
    assert (tmp_path / "data").is_dir()
