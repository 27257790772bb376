"""Media tracks served by the producer."""
from __future__ import annotations

import logging
import time
from fractions import Fraction
from typing import Any

import numpy as np

from .config import CaptureConfig
from .errors import UnsupportedCapability
from .telemetry import FrameCount

try:  # pragma: no cover - optional dependency
    from av import VideoFrame
except ImportError as exc:  # pragma: no cover - handled at runtime
    VideoFrame = None  # type: ignore[assignment]
    _AV_IMPORT_ERROR: ImportError | None = exc
else:  # pragma: no cover - executed when dependency is installed
    _AV_IMPORT_ERROR = None

try:  # pragma: no cover - optional dependency
    from aiortc.mediastreams import AudioStreamTrack as _AudioStreamTrack
    from aiortc.mediastreams import MediaStreamTrack as _MediaStreamTrack
    from aiortc.mediastreams import VideoStreamTrack as _VideoStreamTrack
except ImportError as exc:  # pragma: no cover - handled at runtime
    _AudioStreamTrack = None  # type: ignore[assignment]
    _AIORTC_IMPORT_ERROR: ImportError | None = exc

    class _VideoStreamTrack:  # type: ignore[no-redef]
        """Stub base class used when aiortc is unavailable."""

        def __init__(self, *args: object, **kwargs: object) -> None:
            super().__init__()

    class _MediaStreamTrack:  # type: ignore[no-redef]
        """Stub base class used when aiortc is unavailable."""

        def stop(self) -> None:
            return None

else:  # pragma: no cover - executed when dependency is installed
    _AIORTC_IMPORT_ERROR = None


logger = logging.getLogger(__name__)

TEST_PATTERN_SOURCES = frozenset({"test", "test-pattern", "synthetic"})


def _ensure_media_available() -> None:
    """Raise a helpful error when aiortc or PyAV is missing."""

    if _AIORTC_IMPORT_ERROR is not None:
        raise RuntimeError(
            "aiortc is required for media tracks. Install the 'aiortc' package to enable streaming."
        ) from _AIORTC_IMPORT_ERROR
    if _AV_IMPORT_ERROR is not None:
        raise RuntimeError(
            "PyAV is required for media tracks. Install the 'av' package to enable streaming."
        ) from _AV_IMPORT_ERROR


def render_test_pattern(width: int, height: int, elapsed: float) -> np.ndarray:
    """Return an RGB gradient that scrolls horizontally over time."""

    horizontal = np.linspace(0, 255, width, dtype=np.uint8)
    vertical = np.linspace(0, 255, height, dtype=np.uint8).reshape(-1, 1)
    red = np.tile(horizontal, (height, 1))
    green = np.roll(red, int(elapsed * 10), axis=1)
    blue = np.tile(vertical, (1, width))
    return np.stack([red, green, blue], axis=2).astype(np.uint8)


class TestPatternTrack(_VideoStreamTrack):
    """Video track producing a synthetic gradient at the requested size."""

    __test__ = False

    def __init__(self, width: int = 1920, height: int = 1080, fps: int = 30) -> None:
        _ensure_media_available()
        super().__init__()
        if width <= 0 or height <= 0:
            raise ValueError("Test pattern dimensions must be positive")
        self._width = int(width)
        self._height = int(height)
        self._frame_time = Fraction(1, max(1, int(fps)))
        self._start = time.perf_counter()

    @property
    def size(self) -> tuple[int, int]:
        return (self._width, self._height)

    async def recv(self) -> "VideoFrame":
        pts, time_base = await self.next_timestamp()
        frame = render_test_pattern(self._width, self._height, time.perf_counter() - self._start)
        video_frame = VideoFrame.from_ndarray(frame, format="rgb24")
        video_frame.pts = pts
        video_frame.time_base = time_base
        return video_frame


class FrameCountingTrack(_MediaStreamTrack):
    """Pass-through for a received video track that counts delivered frames."""

    kind = "video"

    def __init__(self, source: Any) -> None:
        super().__init__()
        self._source = source
        self._frames = 0
        self._width = 0
        self._height = 0

    @property
    def source(self) -> Any:
        return self._source

    async def recv(self) -> Any:
        frame = await self._source.recv()
        self._frames += 1
        self._width = int(getattr(frame, "width", 0) or 0)
        self._height = int(getattr(frame, "height", 0) or 0)
        return frame

    def snapshot(self) -> FrameCount:
        return FrameCount(frames=self._frames, width=self._width, height=self._height)

    def stop(self) -> None:
        super().stop()
        self._source.stop()


def resolve_video_source(source_type: str) -> str:
    """Return the capture backend for *source_type*.

    Only the synthetic test pattern is available in-process; screen and
    window capture belong to platform pipelines outside this package.
    """

    normalised = source_type.strip().lower()
    if normalised in TEST_PATTERN_SOURCES:
        return "test"
    raise UnsupportedCapability(f"Capture source {source_type!r} is not available on this host")


def create_video_track(config: CaptureConfig) -> TestPatternTrack:
    """Return the video track for *config*, falling back to the test pattern."""

    try:
        resolve_video_source(config.source_type)
    except UnsupportedCapability as exc:
        logger.warning("%s; streaming the test pattern instead", exc)
    width, height = config.resolution.as_tuple()
    return TestPatternTrack(width, height, config.framerate)


def create_audio_track(config: CaptureConfig):
    """Return a silent audio track when audio is enabled, otherwise ``None``."""

    if not config.enable_audio:
        return None
    _ensure_media_available()
    if config.audio_source:
        logger.info("Audio source %s requested; sending silence", config.audio_source)
    return _AudioStreamTrack()


__all__ = [
    "FrameCountingTrack",
    "TEST_PATTERN_SOURCES",
    "TestPatternTrack",
    "create_audio_track",
    "create_video_track",
    "render_test_pattern",
    "resolve_video_source",
]
