from pathlib import Path
import json

import pytest

from desk_stream.config import (
    AdaptiveSettings,
    CaptureConfig,
    ConfigManager,
    DEFAULT_ADAPTIVE_SETTINGS,
    DEFAULT_CAPTURE_CONFIG,
    DEFAULT_SIGNALING_URL,
    DEFAULT_TELEMETRY_SETTINGS,
    Resolution,
    SIGNALING_URL_ENV,
    TelemetrySettings,
    parse_capture_config,
    parse_resolution,
    with_profile,
)


def test_defaults(tmp_path: Path):
    manager = ConfigManager(tmp_path / "viewer.json")
    assert manager.get_signaling_url() == DEFAULT_SIGNALING_URL
    assert manager.get_capture_config() == DEFAULT_CAPTURE_CONFIG
    assert manager.get_telemetry_settings() == DEFAULT_TELEMETRY_SETTINGS
    assert manager.get_adaptive_settings() == DEFAULT_ADAPTIVE_SETTINGS


def test_default_capture_config_matches_wire_defaults():
    config = CaptureConfig()
    assert config.resolution == Resolution(1920, 1080)
    assert config.framerate == 30
    assert config.audio_bitrate == 128000
    assert config.audio_sample_rate == 48000
    assert config.use_hardware_encoding is True


def test_capture_config_persists(tmp_path: Path):
    config_file = tmp_path / "viewer.json"
    manager = ConfigManager(config_file)
    updated = manager.set_capture_config(
        {"source_type": "x11-1", "resolution": "1280x720", "framerate": "24", "enable_audio": "yes"}
    )
    assert updated.source_type == "x11-1"
    assert updated.resolution == Resolution(1280, 720)
    assert updated.framerate == 24
    assert updated.enable_audio is True
    # Reload to ensure persistence
    reloaded = ConfigManager(config_file)
    assert reloaded.get_capture_config() == updated


def test_audio_source_survives_while_audio_disabled(tmp_path: Path):
    config_file = tmp_path / "viewer.json"
    manager = ConfigManager(config_file)
    manager.set_capture_config({"audio_source": "monitor-2", "enable_audio": False})
    assert json.loads(config_file.read_text())["capture"]["audio_source"] == "monitor-2"
    assert ConfigManager(config_file).get_capture_config().audio_source == "monitor-2"


@pytest.mark.parametrize(
    "payload",
    [
        {"framerate": 0},
        {"framerate": 61},
        {"framerate": 29.5},
        {"audio_sample_rate": 22050},
        {"source_type": ""},
        {"resolution": "wide"},
        {"resolution": [0, 720]},
        {"enable_audio": "maybe"},
    ],
)
def test_invalid_capture_config_rejected(tmp_path: Path, payload):
    manager = ConfigManager(tmp_path / "viewer.json")
    with pytest.raises(ValueError):
        manager.set_capture_config(payload)
    assert manager.get_capture_config() == DEFAULT_CAPTURE_CONFIG


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        ("854x480", Resolution(854, 480)),
        ("1280 X 720", Resolution(1280, 720)),
        ([640, 360], Resolution(640, 360)),
        ({"width": 800, "height": 600}, Resolution(800, 600)),
        (None, Resolution(1920, 1080)),
    ],
)
def test_parse_resolution_forms(value, expected):
    assert parse_resolution(value, default=Resolution(1920, 1080)) == expected


def test_parse_capture_config_merges_over_default():
    base = CaptureConfig(source_type="x11-0", framerate=20)
    merged = parse_capture_config({"enable_microphone_input": True}, default=base)
    assert merged.source_type == "x11-0"
    assert merged.framerate == 20
    assert merged.enable_microphone_input is True


def test_signaling_url_persists_and_requires_websocket_scheme(tmp_path: Path):
    config_file = tmp_path / "viewer.json"
    manager = ConfigManager(config_file)
    assert manager.set_signaling_url(" wss://desk.local/ws ") == "wss://desk.local/ws"
    assert ConfigManager(config_file).get_signaling_url() == "wss://desk.local/ws"
    with pytest.raises(ValueError):
        manager.set_signaling_url("http://desk.local/ws")


def test_signaling_url_environment_override(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    manager = ConfigManager(tmp_path / "viewer.json")
    monkeypatch.setenv(SIGNALING_URL_ENV, "ws://10.0.0.5:3000/ws")
    assert manager.get_signaling_url() == "ws://10.0.0.5:3000/ws"


def test_telemetry_and_adaptive_settings_persist(tmp_path: Path):
    config_file = tmp_path / "viewer.json"
    manager = ConfigManager(config_file)
    assert manager.set_telemetry_settings({"interval_seconds": "2.5"}) == TelemetrySettings(2.5)
    adaptive = manager.set_adaptive_settings(
        {"auto_renegotiate": "on", "min_dwell_seconds": 15, "bitrate_tolerance": 0.1}
    )
    assert adaptive == AdaptiveSettings(True, 15.0, 0.1)

    reloaded = ConfigManager(config_file)
    assert reloaded.get_telemetry_settings().interval_seconds == 2.5
    assert reloaded.get_adaptive_settings().auto_renegotiate is True


@pytest.mark.parametrize("interval", [0, -1, "fast", float("nan")])
def test_invalid_telemetry_interval_rejected(tmp_path: Path, interval):
    manager = ConfigManager(tmp_path / "viewer.json")
    with pytest.raises(ValueError):
        manager.set_telemetry_settings({"interval_seconds": interval})


def test_corrupt_config_file_raises(tmp_path: Path):
    config_file = tmp_path / "viewer.json"
    config_file.write_text("{not json")
    with pytest.raises(RuntimeError):
        ConfigManager(config_file)


def test_with_profile_replaces_video_parameters_only():
    config = CaptureConfig(source_type="x11-0", enable_audio=True, audio_source="mon")
    updated = with_profile(config, 854, 480, 20)
    assert updated.resolution == Resolution(854, 480)
    assert updated.framerate == 20
    assert updated.audio_source == "mon"
    assert updated.enable_audio is True
