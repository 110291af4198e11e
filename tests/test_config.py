import json
from pathlib import Path

import pytest

from mesh_call.config import (
    DEFAULT_DISPLAY_NAME,
    DEFAULT_ICE_SERVERS,
    ClientSettings,
    RelaySettings,
    load_settings,
)


def test_defaults_without_file(tmp_path: Path):
    settings = load_settings(tmp_path / "missing.json", env={})
    assert settings.relay == RelaySettings()
    assert settings.client.display_name == DEFAULT_DISPLAY_NAME
    assert settings.client.ice_servers == DEFAULT_ICE_SERVERS
    assert settings.client.max_pending_candidates == 256


def test_file_values_are_loaded(tmp_path: Path):
    config_file = tmp_path / "config.json"
    config_file.write_text(
        json.dumps(
            {
                "relay": {"port": 8080},
                "client": {
                    "relay_url": "wss://calls.example.org/ws",
                    "display_name": " Alice ",
                    "ice_servers": [],
                    "capture": "Synthetic",
                },
            }
        )
    )
    settings = load_settings(config_file, env={})
    assert settings.relay.port == 8080
    assert settings.client.relay_url == "wss://calls.example.org/ws"
    assert settings.client.display_name == "Alice"
    assert settings.client.ice_servers == ()
    assert settings.client.capture == "synthetic"


def test_environment_overrides_file(tmp_path: Path):
    config_file = tmp_path / "config.json"
    config_file.write_text(json.dumps({"client": {"display_name": "Alice"}}))
    env = {
        "MESHCALL_DISPLAY_NAME": "Bob",
        "MESHCALL_PORT": "9000",
        "MESHCALL_ICE_SERVERS": "stun:a.example:3478, turn:b.example:3478",
        "MESHCALL_CHAT_HISTORY": "10",
    }
    settings = load_settings(config_file, env=env)
    assert settings.client.display_name == "Bob"
    assert settings.relay.port == 9000
    assert settings.client.ice_servers == ("stun:a.example:3478", "turn:b.example:3478")
    assert settings.client.chat_history == 10


def test_invalid_environment_values_are_ignored():
    settings = load_settings(env={"MESHCALL_PORT": "eighty", "MESHCALL_CAPTURE": "webcam"})
    assert settings.relay.port == 3000
    assert settings.client.capture == "auto"


def test_invalid_file_is_rejected(tmp_path: Path):
    config_file = tmp_path / "config.json"
    config_file.write_text("{not json")
    with pytest.raises(ValueError, match="not valid JSON"):
        load_settings(config_file, env={})

    config_file.write_text(json.dumps({"client": {"colour": "blue"}}))
    with pytest.raises(ValueError, match="Unknown configuration option"):
        load_settings(config_file, env={})

    config_file.write_text(json.dumps({"relay": "everywhere"}))
    with pytest.raises(ValueError, match="must be an object"):
        load_settings(config_file, env={})


@pytest.mark.parametrize(
    "kwargs",
    [
        {"relay_url": "http://example.org"},
        {"display_name": "   "},
        {"display_name": "x" * 65},
        {"ice_servers": ("http://stun.example",)},
        {"capture": "webcam"},
        {"video_fps": 0},
        {"max_pending_candidates": 0},
    ],
)
def test_client_settings_validation(kwargs):
    with pytest.raises(ValueError):
        ClientSettings(**kwargs)


def test_relay_settings_validation():
    assert RelaySettings(host=" 127.0.0.1 ", port="8000").to_dict() == {
        "host": "127.0.0.1",
        "port": 8000,
    }
    with pytest.raises(ValueError):
        RelaySettings(port=70000)
    with pytest.raises(ValueError):
        RelaySettings(host="")

