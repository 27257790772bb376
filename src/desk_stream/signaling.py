"""Signaling messages exchanged between viewer and producer.

Every frame on the signaling channel is a JSON object with a ``type`` tag.
The set of variants is closed: :func:`decode_message` rejects unknown tags
with :class:`~desk_stream.errors.MalformedMessage` instead of passing them on,
so consumers can dispatch on the concrete class without a fallthrough branch.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, ClassVar, Mapping, Union

from .config import DEFAULT_CAPTURE_CONFIG, CaptureConfig, parse_capture_config
from .errors import MalformedMessage


@dataclass(frozen=True, slots=True)
class SourceInfo:
    """A capture source advertised by the producer."""

    id: str
    name: str
    source_type: str = "screen"
    resolution: str = "1920x1080"
    primary: bool = False

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "name": self.name,
            "source_type": self.source_type,
            "resolution": self.resolution,
            "primary": self.primary,
        }

    @classmethod
    def from_payload(cls, payload: Any) -> "SourceInfo":
        if not isinstance(payload, Mapping):
            raise MalformedMessage("Source entries must be JSON objects")
        source_type = payload.get("source_type", payload.get("type", "screen"))
        return cls(
            id=_require_str(payload, "id"),
            name=_require_str(payload, "name"),
            source_type=str(source_type),
            resolution=str(payload.get("resolution", "")),
            primary=bool(payload.get("primary", False)),
        )


@dataclass(frozen=True, slots=True)
class AudioDeviceInfo:
    """An audio device advertised by the producer."""

    name: str
    description: str = ""
    device_type: str = "system"

    def to_dict(self) -> dict[str, object]:
        return {
            "name": self.name,
            "description": self.description,
            "device_type": self.device_type,
        }

    @classmethod
    def from_payload(cls, payload: Any) -> "AudioDeviceInfo":
        if not isinstance(payload, Mapping):
            raise MalformedMessage("Audio device entries must be JSON objects")
        return cls(
            name=_require_str(payload, "name"),
            description=str(payload.get("description") or ""),
            device_type=str(payload.get("device_type") or "system"),
        )


@dataclass(frozen=True, slots=True)
class Offer:
    TYPE: ClassVar[str] = "offer"

    sdp: str
    config: CaptureConfig = DEFAULT_CAPTURE_CONFIG

    def to_dict(self) -> dict[str, object]:
        return {"type": self.TYPE, "sdp": self.sdp, "config": self.config.to_dict()}

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "Offer":
        config_payload = payload.get("config")
        try:
            config = parse_capture_config(config_payload, default=DEFAULT_CAPTURE_CONFIG)
        except ValueError as exc:
            raise MalformedMessage(f"Invalid offer config: {exc}") from exc
        return cls(sdp=_require_str(payload, "sdp"), config=config)


@dataclass(frozen=True, slots=True)
class Answer:
    TYPE: ClassVar[str] = "answer"

    sdp: str

    def to_dict(self) -> dict[str, object]:
        return {"type": self.TYPE, "sdp": self.sdp}

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "Answer":
        return cls(sdp=_require_str(payload, "sdp"))


@dataclass(frozen=True, slots=True)
class IceCandidateMessage:
    TYPE: ClassVar[str] = "ice-candidate"

    candidate: str

    def to_dict(self) -> dict[str, object]:
        return {"type": self.TYPE, "candidate": self.candidate}

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "IceCandidateMessage":
        candidate = payload.get("candidate")
        # Some peers send the candidate object inline instead of as a string.
        if isinstance(candidate, Mapping):
            candidate = json.dumps(dict(candidate))
        if not isinstance(candidate, str):
            raise MalformedMessage("ice-candidate message requires a 'candidate' field")
        return cls(candidate=candidate)


@dataclass(frozen=True, slots=True)
class SourceList:
    TYPE: ClassVar[str] = "monitors"

    sources: tuple[SourceInfo, ...] = ()

    def to_dict(self) -> dict[str, object]:
        return {"type": self.TYPE, "monitors": [source.to_dict() for source in self.sources]}

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "SourceList":
        entries = payload.get("monitors")
        if not isinstance(entries, list):
            raise MalformedMessage("monitors message requires a 'monitors' list")
        return cls(sources=tuple(SourceInfo.from_payload(entry) for entry in entries))


@dataclass(frozen=True, slots=True)
class AudioDeviceList:
    TYPE: ClassVar[str] = "audio-devices"

    devices: tuple[AudioDeviceInfo, ...] = ()

    def to_dict(self) -> dict[str, object]:
        return {"type": self.TYPE, "devices": [device.to_dict() for device in self.devices]}

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "AudioDeviceList":
        entries = payload.get("devices")
        if not isinstance(entries, list):
            raise MalformedMessage("audio-devices message requires a 'devices' list")
        return cls(devices=tuple(AudioDeviceInfo.from_payload(entry) for entry in entries))


@dataclass(frozen=True, slots=True)
class ErrorMessage:
    TYPE: ClassVar[str] = "error"

    message: str

    def to_dict(self) -> dict[str, object]:
        return {"type": self.TYPE, "message": self.message}

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "ErrorMessage":
        return cls(message=_require_str(payload, "message"))


SignalingMessage = Union[
    Offer,
    Answer,
    IceCandidateMessage,
    SourceList,
    AudioDeviceList,
    ErrorMessage,
]

MESSAGE_CLASSES: tuple[type, ...] = (
    Offer,
    Answer,
    IceCandidateMessage,
    SourceList,
    AudioDeviceList,
    ErrorMessage,
)

_BY_TYPE: dict[str, type] = {cls.TYPE: cls for cls in MESSAGE_CLASSES}


def _require_str(payload: Mapping[str, Any], key: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str):
        raise MalformedMessage(f"Field {key!r} must be a string")
    return value


def encode_message(message: SignalingMessage) -> str:
    """Serialise *message* into a JSON text frame."""

    if not isinstance(message, MESSAGE_CLASSES):
        raise TypeError(f"Unsupported signaling message: {type(message).__name__}")
    return json.dumps(message.to_dict(), separators=(",", ":"))


def decode_message(raw: str | bytes) -> SignalingMessage:
    """Parse a JSON text frame into one of the signaling message variants."""

    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise MalformedMessage("Signaling frame is not valid UTF-8", raw=bytes(raw)) from exc
    try:
        payload = json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise MalformedMessage(f"Signaling frame is not valid JSON: {exc}", raw=raw) from exc
    if not isinstance(payload, dict):
        raise MalformedMessage("Signaling frame must be a JSON object", raw=raw)
    tag = payload.get("type")
    cls = _BY_TYPE.get(tag) if isinstance(tag, str) else None
    if cls is None:
        raise MalformedMessage(f"Unknown signaling message type: {tag!r}", raw=raw)
    try:
        return cls.from_payload(payload)
    except MalformedMessage as exc:
        exc.raw = raw
        raise


__all__ = [
    "Answer",
    "AudioDeviceInfo",
    "AudioDeviceList",
    "ErrorMessage",
    "IceCandidateMessage",
    "MESSAGE_CLASSES",
    "Offer",
    "SignalingMessage",
    "SourceInfo",
    "SourceList",
    "decode_message",
    "encode_message",
]
