"""Derive encoding profiles from telemetry and decide when to apply them."""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable

from .config import AdaptiveSettings, CaptureConfig, with_profile
from .telemetry import MetricSample

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class QualityProfile:
    """Target resolution, frame rate and bitrate for the remote encoder."""

    width: int
    height: int
    framerate: int
    bitrate_kbps: int
    label: str

    @property
    def resolution(self) -> tuple[int, int]:
        return (self.width, self.height)

    def to_dict(self) -> dict[str, object]:
        return {
            "resolution": f"{self.width}x{self.height}",
            "framerate": self.framerate,
            "bitrate_kbps": self.bitrate_kbps,
            "label": self.label,
        }

    def apply_to(self, config: CaptureConfig) -> CaptureConfig:
        """Return *config* with this profile's resolution and frame rate.

        ``bitrate_kbps`` is not carried over: the offer configuration has no
        video bitrate field, so the producer keeps its own encoder rate and
        the value here stays advisory.
        """

        return with_profile(config, self.width, self.height, self.framerate)


HIGH_PROFILE = QualityProfile(1920, 1080, 30, 5000, "high")
MEDIUM_PROFILE = QualityProfile(1280, 720, 24, 3000, "medium")
LOW_PROFILE = QualityProfile(854, 480, 20, 1500, "low")

HIGH_LATENCY_MS = 200
MIN_FRAMERATE = 15
MIN_BITRATE_KBPS = 1000


def compute_profile(sample: MetricSample) -> QualityProfile:
    """Return the profile suited to the metrics in *sample*.

    The result depends only on the current sample. The second degradation
    step replaces the first outright; the latency penalty applies on top of
    whichever step was selected. Frame rate and latency that the statistics
    source did not report never trigger a step.
    """

    fps = sample.fps
    profile = HIGH_PROFILE
    if (fps is not None and fps < 20) or sample.cpu_percent > 80:
        profile = MEDIUM_PROFILE
    if (fps is not None and fps < 15) or sample.cpu_percent > 90:
        profile = LOW_PROFILE
    if sample.rtt_ms is not None and sample.rtt_ms > HIGH_LATENCY_MS:
        profile = QualityProfile(
            width=profile.width,
            height=profile.height,
            framerate=max(MIN_FRAMERATE, profile.framerate - 5),
            bitrate_kbps=max(MIN_BITRATE_KBPS, int(round(profile.bitrate_kbps * 0.8))),
            label=profile.label,
        )
    return profile


class ProfilePolicy:
    """Decide whether a computed profile is worth a renegotiation.

    With the default settings every meaningful change is applied at once.
    ``bitrate_tolerance`` ignores bitrate-only changes smaller than that
    fraction of the active bitrate; ``min_dwell_seconds`` holds a profile
    for at least that long after it was applied.
    """

    def __init__(self, *, min_dwell_seconds: float = 0.0, bitrate_tolerance: float = 0.0) -> None:
        if min_dwell_seconds < 0:
            raise ValueError("Minimum dwell time must be zero or positive")
        if not 0 <= bitrate_tolerance < 1:
            raise ValueError("Bitrate tolerance must be between 0 and 1")
        self.min_dwell_seconds = float(min_dwell_seconds)
        self.bitrate_tolerance = float(bitrate_tolerance)

    @classmethod
    def from_settings(cls, settings: AdaptiveSettings) -> "ProfilePolicy":
        return cls(
            min_dwell_seconds=settings.min_dwell_seconds,
            bitrate_tolerance=settings.bitrate_tolerance,
        )

    def differs(self, active: QualityProfile, candidate: QualityProfile) -> bool:
        if (
            active.resolution != candidate.resolution
            or active.framerate != candidate.framerate
            or active.label != candidate.label
        ):
            return True
        delta = abs(candidate.bitrate_kbps - active.bitrate_kbps)
        return delta > active.bitrate_kbps * self.bitrate_tolerance

    def should_apply(
        self,
        active: QualityProfile | None,
        candidate: QualityProfile,
        *,
        now: float,
        applied_at: float | None,
    ) -> bool:
        if active is None:
            return True
        if not self.differs(active, candidate):
            return False
        if applied_at is not None and now - applied_at < self.min_dwell_seconds:
            return False
        return True


class AdaptiveQualityController:
    """Track the active profile and surface the ones worth applying.

    The controller never renegotiates itself. Callers take the profile
    returned by :meth:`propose`, renegotiate, then report success through
    :meth:`mark_applied`.
    """

    def __init__(
        self,
        *,
        policy: ProfilePolicy | None = None,
        active: QualityProfile | None = HIGH_PROFILE,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._policy = policy or ProfilePolicy()
        self._active = active
        self._clock = clock
        self._applied_at: float | None = None
        self._latest: QualityProfile | None = None

    @property
    def active(self) -> QualityProfile | None:
        return self._active

    @property
    def latest(self) -> QualityProfile | None:
        return self._latest

    def propose(self, sample: MetricSample) -> QualityProfile | None:
        candidate = compute_profile(sample)
        self._latest = candidate
        if not self._policy.should_apply(
            self._active, candidate, now=self._clock(), applied_at=self._applied_at
        ):
            return None
        logger.info(
            "Quality profile change suggested: %s -> %s",
            self._active.label if self._active else "none",
            candidate.label,
        )
        return candidate

    def mark_applied(self, profile: QualityProfile) -> None:
        self._active = profile
        self._applied_at = self._clock()


__all__ = [
    "AdaptiveQualityController",
    "HIGH_PROFILE",
    "LOW_PROFILE",
    "MEDIUM_PROFILE",
    "ProfilePolicy",
    "QualityProfile",
    "compute_profile",
]
