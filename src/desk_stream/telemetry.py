"""Periodic sampling of peer-connection transport statistics."""
from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from dataclasses import asdict, dataclass
from typing import Any, Awaitable, Callable, Iterable, Mapping

from .system_metrics import SystemMetrics, collect_system_metrics

logger = logging.getLogger(__name__)

StatsSource = Callable[[], Awaitable[Any]]
SampleCallback = Callable[["MetricSample"], None]
FrameSource = Callable[[], "FrameCount | None"]


@dataclass(frozen=True, slots=True)
class MetricSample:
    """One observation per sampling tick.

    Transport metrics the statistics source does not report are ``None``
    rather than zero, so they are neither graded nor used for adaptation.
    """

    fps: float | None = None
    bitrate_kbps: float | None = None
    rtt_ms: float | None = None
    jitter: float | None = None
    frames_dropped: int | None = None
    cpu_percent: float = 0.0
    memory_percent: float = 0.0
    timestamp: float = 0.0
    width: int = 0
    height: int = 0
    packets_lost: int = 0
    loss_percent: float = 0.0

    def to_dict(self) -> dict[str, float | int | None]:
        return asdict(self)


@dataclass(frozen=True, slots=True)
class FrameCount:
    """Frames pulled through a received video track so far."""

    frames: int
    width: int = 0
    height: int = 0


@dataclass(slots=True)
class _Counters:
    at: float
    frames: float | None
    bytes: float | None


def _field(report: Any, name: str, default: Any = None) -> Any:
    if isinstance(report, Mapping):
        return report.get(name, default)
    return getattr(report, name, default)


def _optional_number(report: Any, name: str) -> float | None:
    if report is None:
        return None
    value = _field(report, name)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


def _number(report: Any, name: str) -> float:
    value = _optional_number(report, name)
    return 0.0 if value is None else value


def _iter_reports(stats: Any) -> Iterable[Any]:
    if stats is None:
        return ()
    if isinstance(stats, Mapping):
        return stats.values()
    return stats


def _is_video(report: Any) -> bool:
    kind = _field(report, "kind") or _field(report, "mediaType")
    return kind in (None, "video")


def _rate(current: float | None, previous: float | None, elapsed: float | None) -> float | None:
    if current is None:
        return None
    if previous is None or elapsed is None or elapsed <= 0:
        return 0.0
    return max(0.0, (current - previous) / elapsed)


class TelemetrySampler:
    """Poll a statistics source at a fixed cadence and derive rate metrics.

    ``stats_source`` is an awaitable factory such as ``pc.getStats``. Each
    poll differences the frame and byte counters against the previous poll;
    the first poll, and any poll with a non-positive time delta, reports
    rates of zero. Decoded frames come from the inbound video report when it
    carries ``framesDecoded`` and otherwise from ``frame_source``; received
    bytes fall back to the ``transport`` report. A counter with no source at
    all yields ``None``.
    """

    def __init__(
        self,
        stats_source: StatsSource,
        *,
        interval: float = 1.0,
        on_sample: SampleCallback | None = None,
        frame_source: FrameSource | None = None,
        system_metrics: Callable[[], SystemMetrics] = collect_system_metrics,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], float] = time.time,
    ) -> None:
        if interval <= 0:
            raise ValueError("Sampling interval must be positive")
        self._stats_source = stats_source
        self._interval = float(interval)
        self._on_sample = on_sample
        self._frame_source = frame_source
        self._system_metrics = system_metrics
        self._clock = clock
        self._wall_clock = wall_clock
        self._previous: _Counters | None = None
        self._task: asyncio.Task[None] | None = None

    @property
    def interval(self) -> float:
        return self._interval

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._previous = None
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is None:
            return
        task.cancel()
        if task is asyncio.current_task():
            return
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def sample_once(self) -> MetricSample:
        stats = await self._stats_source()
        return self._build_sample(stats)

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            try:
                sample = await self.sample_once()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.debug("Unable to collect transport statistics", exc_info=True)
                continue
            callback = self._on_sample
            if callback is None:
                continue
            try:
                callback(sample)
            except Exception:  # pragma: no cover - observer failures are logged only
                logger.exception("Telemetry observer failed")

    def _build_sample(self, stats: Any) -> MetricSample:
        inbound = remote_inbound = pair = transport = None
        for report in _iter_reports(stats):
            report_type = _field(report, "type")
            if report_type == "inbound-rtp" and _is_video(report):
                inbound = report
            elif report_type == "remote-inbound-rtp" and _is_video(report):
                remote_inbound = report
            elif report_type == "transport" and transport is None:
                transport = report
            if report_type in ("candidate-pair", "transport") and pair is None:
                if _field(report, "currentRoundTripTime") is not None:
                    pair = report

        decoded = self._frame_source() if self._frame_source is not None else None
        frames = _optional_number(inbound, "framesDecoded")
        if frames is None and decoded is not None:
            frames = float(decoded.frames)
        received_bytes = _optional_number(inbound, "bytesReceived")
        if received_bytes is None:
            received_bytes = _optional_number(transport, "bytesReceived")

        now = self._clock()
        previous = self._previous
        elapsed = now - previous.at if previous is not None else None
        fps = _rate(frames, previous.frames if previous else None, elapsed)
        bytes_per_second = _rate(
            received_bytes, previous.bytes if previous else None, elapsed
        )
        bitrate = bytes_per_second * 8 / 1000.0 if bytes_per_second is not None else None
        self._previous = _Counters(at=now, frames=frames, bytes=received_bytes)

        width = int(_number(inbound, "frameWidth"))
        height = int(_number(inbound, "frameHeight"))
        if not width and decoded is not None:
            width, height = decoded.width, decoded.height
        dropped = _optional_number(inbound, "framesDropped")
        packets_lost = int(_number(inbound, "packetsLost"))
        loss_percent = 0.0
        total = _number(inbound, "packetsReceived") + packets_lost
        if total > 0:
            loss_percent = packets_lost / total * 100.0

        rtt_seconds = _optional_number(remote_inbound, "roundTripTime")
        if not rtt_seconds:
            rtt_seconds = _optional_number(pair, "currentRoundTripTime") or rtt_seconds

        host = self._system_metrics()
        return MetricSample(
            fps=fps,
            bitrate_kbps=bitrate,
            rtt_ms=rtt_seconds * 1000.0 if rtt_seconds is not None else None,
            jitter=_optional_number(inbound, "jitter"),
            frames_dropped=int(dropped) if dropped is not None else None,
            cpu_percent=host.cpu_percent,
            memory_percent=host.memory_percent,
            timestamp=self._wall_clock(),
            width=width,
            height=height,
            packets_lost=packets_lost,
            loss_percent=loss_percent,
        )


__all__ = ["FrameCount", "FrameSource", "MetricSample", "SampleCallback", "StatsSource", "TelemetrySampler"]
