"""Error types shared by the desk_stream components."""
from __future__ import annotations


class StreamError(RuntimeError):
    """Base error raised by desk_stream components."""


class ChannelClosed(StreamError):
    """Raised when the signaling transport is not open."""


class MalformedMessage(StreamError):
    """Raised when an inbound signaling frame cannot be decoded."""

    def __init__(self, message: str, *, raw: str | bytes | None = None) -> None:
        super().__init__(message)
        self.raw = raw


class NegotiationFailed(StreamError):
    """Raised when the peer connection cannot be established."""


class DeviceAccessDenied(StreamError):
    """Raised when a capture capability such as the microphone is refused."""


class UnsupportedCapability(StreamError):
    """Raised when a requested capability is not available on this host."""


__all__ = [
    "StreamError",
    "ChannelClosed",
    "MalformedMessage",
    "NegotiationFailed",
    "DeviceAccessDenied",
    "UnsupportedCapability",
]
