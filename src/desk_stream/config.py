"""Configuration management for the desk_stream viewer."""
from __future__ import annotations

import json
import math
import os
from dataclasses import dataclass, replace
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Mapping, Sequence

DEFAULT_SIGNALING_URL = "ws://127.0.0.1:3000/ws"
SIGNALING_URL_ENV = "DESK_STREAM_SIGNALING_URL"

AUDIO_SAMPLE_RATES: tuple[int, ...] = (44100, 48000)


@dataclass(frozen=True, slots=True)
class Resolution:
    """Represents a capture or encoding resolution."""

    width: int
    height: int

    def __post_init__(self) -> None:
        if self.width <= 0 or self.height <= 0:
            raise ValueError("Resolution dimensions must be positive integers")

    def as_tuple(self) -> tuple[int, int]:
        return (int(self.width), int(self.height))

    def key(self) -> str:
        return f"{self.width}x{self.height}"


@dataclass(frozen=True, slots=True)
class CaptureConfig:
    """Capture parameters requested from the remote producer with each offer."""

    source_type: str = "test"
    audio_source: str | None = None
    enable_audio: bool = False
    enable_microphone_input: bool = False
    audio_bitrate: int = 128000
    audio_sample_rate: int = 48000
    resolution: Resolution = Resolution(1920, 1080)
    framerate: int = 30
    use_hardware_encoding: bool = True

    def __post_init__(self) -> None:
        if not isinstance(self.source_type, str) or not self.source_type.strip():
            raise ValueError("Source type must be a non-empty string")
        if self.audio_bitrate <= 0:
            raise ValueError("Audio bitrate must be positive")
        if self.audio_sample_rate not in AUDIO_SAMPLE_RATES:
            raise ValueError(
                f"Audio sample rate must be one of {', '.join(map(str, AUDIO_SAMPLE_RATES))}"
            )
        if self.framerate < 1 or self.framerate > 60:
            raise ValueError("Framerate must be between 1 and 60")

    def to_dict(self) -> Dict[str, Any]:
        """Return the wire representation used in ``offer`` messages."""

        return {
            "source_type": self.source_type,
            "audio_source": self.audio_source if self.enable_audio else None,
            "enable_audio": bool(self.enable_audio),
            "enable_microphone_input": bool(self.enable_microphone_input),
            "audio_bitrate": int(self.audio_bitrate),
            "audio_sample_rate": int(self.audio_sample_rate),
            "resolution": list(self.resolution.as_tuple()),
            "framerate": int(self.framerate),
            "use_hardware_encoding": bool(self.use_hardware_encoding),
        }


DEFAULT_CAPTURE_CONFIG = CaptureConfig()


@dataclass(frozen=True, slots=True)
class TelemetrySettings:
    """Cadence of the statistics poll."""

    interval_seconds: float = 1.0

    def __post_init__(self) -> None:
        try:
            interval = float(self.interval_seconds)
        except (TypeError, ValueError) as exc:
            raise ValueError("Telemetry interval must be numeric") from exc
        if not math.isfinite(interval) or interval <= 0:
            raise ValueError("Telemetry interval must be a positive number of seconds")
        object.__setattr__(self, "interval_seconds", interval)

    def to_dict(self) -> dict[str, float]:
        return {"interval_seconds": float(self.interval_seconds)}


@dataclass(frozen=True, slots=True)
class AdaptiveSettings:
    """Policy knobs for applying computed quality profiles."""

    auto_renegotiate: bool = False
    min_dwell_seconds: float = 0.0
    bitrate_tolerance: float = 0.0

    def __post_init__(self) -> None:
        try:
            dwell = float(self.min_dwell_seconds)
            tolerance = float(self.bitrate_tolerance)
        except (TypeError, ValueError) as exc:
            raise ValueError("Adaptive settings must be numeric") from exc
        if not math.isfinite(dwell) or dwell < 0:
            raise ValueError("Minimum dwell time must be zero or positive")
        if not math.isfinite(tolerance) or tolerance < 0 or tolerance >= 1:
            raise ValueError("Bitrate tolerance must be between 0 and 1")
        object.__setattr__(self, "auto_renegotiate", bool(self.auto_renegotiate))
        object.__setattr__(self, "min_dwell_seconds", dwell)
        object.__setattr__(self, "bitrate_tolerance", tolerance)

    def to_dict(self) -> dict[str, object]:
        return {
            "auto_renegotiate": self.auto_renegotiate,
            "min_dwell_seconds": self.min_dwell_seconds,
            "bitrate_tolerance": self.bitrate_tolerance,
        }


DEFAULT_TELEMETRY_SETTINGS = TelemetrySettings()
DEFAULT_ADAPTIVE_SETTINGS = AdaptiveSettings()


def _parse_bool(value: Any, *, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off"}:
            return False
    raise ValueError(f"Expected a boolean value, got {value!r}")


def _parse_int(value: Any, *, name: str) -> int:
    if isinstance(value, bool):
        raise ValueError(f"{name} must be an integer")
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{name} must be an integer") from exc
    if not math.isfinite(number) or not number.is_integer():
        raise ValueError(f"{name} must be an integer")
    return int(number)


def parse_resolution(value: Any, *, default: Resolution) -> Resolution:
    """Return a :class:`Resolution` from ``"WxH"``, ``[w, h]`` or a mapping."""

    if value is None:
        return default
    if isinstance(value, Resolution):
        return value
    if isinstance(value, str):
        parts = value.lower().replace(" ", "").split("x")
        if len(parts) != 2:
            raise ValueError(f"Invalid resolution: {value!r}")
        return Resolution(_parse_int(parts[0], name="Width"), _parse_int(parts[1], name="Height"))
    if isinstance(value, Mapping):
        return Resolution(
            _parse_int(value.get("width"), name="Width"),
            _parse_int(value.get("height"), name="Height"),
        )
    if isinstance(value, Sequence) and len(value) == 2:
        return Resolution(_parse_int(value[0], name="Width"), _parse_int(value[1], name="Height"))
    raise ValueError(f"Invalid resolution: {value!r}")


def parse_capture_config(
    data: Mapping[str, Any] | CaptureConfig | None, *, default: CaptureConfig
) -> CaptureConfig:
    """Merge *data* over *default*, validating every field."""

    if data is None:
        return default
    if isinstance(data, CaptureConfig):
        return data
    if not isinstance(data, Mapping):
        raise ValueError("Capture configuration must be a mapping")

    source_raw = data.get("source_type", default.source_type)
    if not isinstance(source_raw, str) or not source_raw.strip():
        raise ValueError("Source type must be a non-empty string")
    audio_source = data.get("audio_source", default.audio_source)
    if audio_source is not None and not isinstance(audio_source, str):
        raise ValueError("Audio source must be a string or null")
    return CaptureConfig(
        source_type=source_raw.strip(),
        audio_source=audio_source or None,
        enable_audio=_parse_bool(data.get("enable_audio"), default=default.enable_audio),
        enable_microphone_input=_parse_bool(
            data.get("enable_microphone_input"), default=default.enable_microphone_input
        ),
        audio_bitrate=_parse_int(
            data.get("audio_bitrate", default.audio_bitrate), name="Audio bitrate"
        ),
        audio_sample_rate=_parse_int(
            data.get("audio_sample_rate", default.audio_sample_rate), name="Audio sample rate"
        ),
        resolution=parse_resolution(data.get("resolution"), default=default.resolution),
        framerate=_parse_int(data.get("framerate", default.framerate), name="Framerate"),
        use_hardware_encoding=_parse_bool(
            data.get("use_hardware_encoding"), default=default.use_hardware_encoding
        ),
    )


def _parse_telemetry(value: Any, *, default: TelemetrySettings) -> TelemetrySettings:
    if value is None:
        return default
    if isinstance(value, TelemetrySettings):
        return value
    if not isinstance(value, Mapping):
        raise ValueError("Telemetry settings must be a mapping")
    return TelemetrySettings(
        interval_seconds=value.get("interval_seconds", default.interval_seconds)
    )


def _parse_adaptive(value: Any, *, default: AdaptiveSettings) -> AdaptiveSettings:
    if value is None:
        return default
    if isinstance(value, AdaptiveSettings):
        return value
    if not isinstance(value, Mapping):
        raise ValueError("Adaptive settings must be a mapping")
    return AdaptiveSettings(
        auto_renegotiate=_parse_bool(
            value.get("auto_renegotiate"), default=default.auto_renegotiate
        ),
        min_dwell_seconds=value.get("min_dwell_seconds", default.min_dwell_seconds),
        bitrate_tolerance=value.get("bitrate_tolerance", default.bitrate_tolerance),
    )


def _parse_signaling_url(value: Any, *, default: str) -> str:
    if value is None:
        return default
    if not isinstance(value, str) or not value.strip():
        raise ValueError("Signaling URL must be a non-empty string")
    url = value.strip()
    if not url.startswith(("ws://", "wss://")):
        raise ValueError("Signaling URL must use the ws:// or wss:// scheme")
    return url


class ConfigManager:
    """Stores viewer configuration on disk with thread-safety."""

    def __init__(self, config_path: Path | str) -> None:
        self._path = Path(config_path)
        self._lock = Lock()
        self._ensure_parent()
        (
            self._signaling_url,
            self._capture,
            self._telemetry,
            self._adaptive,
        ) = self._load()

    def _ensure_parent(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)

    def _load(self) -> tuple[str, CaptureConfig, TelemetrySettings, AdaptiveSettings]:
        if not self._path.exists():
            return (
                DEFAULT_SIGNALING_URL,
                DEFAULT_CAPTURE_CONFIG,
                DEFAULT_TELEMETRY_SETTINGS,
                DEFAULT_ADAPTIVE_SETTINGS,
            )
        try:
            payload = json.loads(self._path.read_text())
            if not isinstance(payload, dict):
                raise ValueError("Configuration file must contain a JSON object")
            return (
                _parse_signaling_url(
                    payload.get("signaling_url"), default=DEFAULT_SIGNALING_URL
                ),
                parse_capture_config(payload.get("capture"), default=DEFAULT_CAPTURE_CONFIG),
                _parse_telemetry(payload.get("telemetry"), default=DEFAULT_TELEMETRY_SETTINGS),
                _parse_adaptive(payload.get("adaptive"), default=DEFAULT_ADAPTIVE_SETTINGS),
            )
        except (OSError, ValueError) as exc:
            raise RuntimeError(f"Failed to load configuration: {exc}") from exc

    def _save(self) -> None:
        payload: Dict[str, Any] = {
            "signaling_url": self._signaling_url,
            "capture": self._capture.to_dict(),
            "telemetry": self._telemetry.to_dict(),
            "adaptive": self._adaptive.to_dict(),
        }
        # Persist the selected audio source even while audio is disabled.
        payload["capture"]["audio_source"] = self._capture.audio_source
        self._path.write_text(json.dumps(payload, indent=2))

    def get_signaling_url(self) -> str:
        override = os.getenv(SIGNALING_URL_ENV)
        if override:
            return _parse_signaling_url(override, default=DEFAULT_SIGNALING_URL)
        with self._lock:
            return self._signaling_url

    def set_signaling_url(self, value: Any) -> str:
        url = _parse_signaling_url(value, default=DEFAULT_SIGNALING_URL)
        with self._lock:
            self._signaling_url = url
            self._save()
        return url

    def get_capture_config(self) -> CaptureConfig:
        with self._lock:
            return self._capture

    def set_capture_config(self, data: Mapping[str, Any] | CaptureConfig) -> CaptureConfig:
        with self._lock:
            capture = parse_capture_config(data, default=self._capture)
            self._capture = capture
            self._save()
        return capture

    def get_telemetry_settings(self) -> TelemetrySettings:
        with self._lock:
            return self._telemetry

    def set_telemetry_settings(
        self, data: Mapping[str, Any] | TelemetrySettings
    ) -> TelemetrySettings:
        with self._lock:
            settings = _parse_telemetry(data, default=self._telemetry)
            self._telemetry = settings
            self._save()
        return settings

    def get_adaptive_settings(self) -> AdaptiveSettings:
        with self._lock:
            return self._adaptive

    def set_adaptive_settings(
        self, data: Mapping[str, Any] | AdaptiveSettings
    ) -> AdaptiveSettings:
        with self._lock:
            settings = _parse_adaptive(data, default=self._adaptive)
            self._adaptive = settings
            self._save()
        return settings


def with_profile(config: CaptureConfig, width: int, height: int, framerate: int) -> CaptureConfig:
    """Return *config* with the video parameters of a quality profile applied."""

    return replace(config, resolution=Resolution(width, height), framerate=framerate)


__all__ = [
    "AdaptiveSettings",
    "CaptureConfig",
    "ConfigManager",
    "DEFAULT_ADAPTIVE_SETTINGS",
    "DEFAULT_CAPTURE_CONFIG",
    "DEFAULT_SIGNALING_URL",
    "DEFAULT_TELEMETRY_SETTINGS",
    "Resolution",
    "SIGNALING_URL_ENV",
    "TelemetrySettings",
    "parse_capture_config",
    "parse_resolution",
    "with_profile",
]
