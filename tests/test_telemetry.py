import asyncio
import datetime

import pytest

from desk_stream.system_metrics import SystemMetrics
from desk_stream.telemetry import FrameCount, MetricSample, TelemetrySampler


def run_async(coro):
    return asyncio.run(coro)


class FakeClock:
    def __init__(self, *readings: float) -> None:
        self._readings = list(readings)

    def __call__(self) -> float:
        return self._readings.pop(0)


def _host() -> SystemMetrics:
    return SystemMetrics(cpu_percent=42.0, memory_percent=61.5)


def _stats(frames: int, received_bytes: int, **extra):
    inbound = {
        "type": "inbound-rtp",
        "kind": "video",
        "framesDecoded": frames,
        "bytesReceived": received_bytes,
        "frameWidth": 1920,
        "frameHeight": 1080,
        "framesDropped": 3,
        "jitter": 0.004,
        "packetsReceived": 95,
        "packetsLost": 5,
    }
    inbound.update(extra)
    return {
        "in": inbound,
        "audio": {"type": "inbound-rtp", "kind": "audio", "framesDecoded": 9999, "bytesReceived": 1},
        "remote": {"type": "remote-inbound-rtp", "kind": "video", "roundTripTime": 0.05},
    }


def test_rates_are_derived_from_counter_deltas():
    async def _test() -> None:
        reports = [_stats(0, 0), _stats(60, 250_000)]

        async def stats_source():
            return reports.pop(0)

        sampler = TelemetrySampler(
            stats_source,
            system_metrics=_host,
            clock=FakeClock(10.0, 12.0),
            wall_clock=lambda: 1_700_000_000.0,
        )
        first = await sampler.sample_once()
        second = await sampler.sample_once()

        assert first.fps == 0.0
        assert first.bitrate_kbps == 0.0
        assert second.fps == pytest.approx(30.0)
        assert second.bitrate_kbps == pytest.approx(1000.0)
        assert second.rtt_ms == pytest.approx(50.0)
        assert second.loss_percent == pytest.approx(5.0)
        assert second.frames_dropped == 3
        assert (second.width, second.height) == (1920, 1080)
        assert second.cpu_percent == 42.0
        assert second.memory_percent == 61.5
        assert second.timestamp == 1_700_000_000.0

    run_async(_test())


def test_non_positive_time_delta_reports_zero_rates():
    async def _test() -> None:
        reports = [_stats(0, 0), _stats(60, 250_000)]

        async def stats_source():
            return reports.pop(0)

        sampler = TelemetrySampler(stats_source, system_metrics=_host, clock=FakeClock(5.0, 5.0))
        await sampler.sample_once()
        sample = await sampler.sample_once()
        assert sample.fps == 0.0
        assert sample.bitrate_kbps == 0.0

    run_async(_test())


def test_candidate_pair_round_trip_is_used_as_fallback():
    async def _test() -> None:
        class Report:
            def __init__(self, **fields) -> None:
                self.__dict__.update(fields)

        async def stats_source():
            return [
                Report(type="inbound-rtp", kind="video", framesDecoded=None),
                Report(type="candidate-pair", currentRoundTripTime=0.12),
            ]

        sampler = TelemetrySampler(stats_source, system_metrics=_host)
        sample = await sampler.sample_once()
        assert sample.rtt_ms == pytest.approx(120.0)
        assert sample.fps is None
        assert sample.bitrate_kbps is None

    run_async(_test())


def test_missing_reports_produce_an_empty_sample():
    async def _test() -> None:
        async def stats_source():
            return None

        sampler = TelemetrySampler(stats_source, system_metrics=_host, wall_clock=lambda: 1.0)
        sample = await sampler.sample_once()
        assert sample == MetricSample(cpu_percent=42.0, memory_percent=61.5, timestamp=1.0)

    run_async(_test())


def test_sampler_loop_delivers_samples_until_stopped():
    async def _test() -> None:
        calls = 0

        async def stats_source():
            nonlocal calls
            calls += 1
            if calls == 2:
                raise RuntimeError("stats unavailable")
            return _stats(calls * 30, calls * 1000)

        received: list[MetricSample] = []
        sampler = TelemetrySampler(
            stats_source, interval=0.01, on_sample=received.append, system_metrics=_host
        )
        sampler.start()
        assert sampler.running
        await asyncio.sleep(0.08)
        await sampler.stop()

        assert not sampler.running
        assert received
        assert calls > len(received)
        count = len(received)
        await asyncio.sleep(0.03)
        assert len(received) == count
        await sampler.stop()

    run_async(_test())


def test_interval_must_be_positive():
    async def stats_source():
        return {}

    with pytest.raises(ValueError):
        TelemetrySampler(stats_source, interval=0)


def test_sample_serialises_every_field():
    payload = MetricSample(fps=29.5, rtt_ms=80.0).to_dict()
    assert payload["fps"] == 29.5
    assert payload["rtt_ms"] == 80.0
    assert set(payload) >= {"bitrate_kbps", "jitter", "frames_dropped", "cpu_percent", "memory_percent"}


def test_aiortc_report_uses_transport_bytes_and_track_frames():
    stats = pytest.importorskip("aiortc.stats")

    async def _test() -> None:
        moment = datetime.datetime(2024, 1, 1, tzinfo=datetime.timezone.utc)

        def report(packets: int, received_bytes: int):
            result = stats.RTCStatsReport()
            result.add(
                stats.RTCInboundRtpStreamStats(
                    timestamp=moment,
                    type="inbound-rtp",
                    id="inbound-rtp_1",
                    ssrc=1,
                    kind="video",
                    transportId="transport_1",
                    packetsReceived=packets,
                    packetsLost=0,
                    jitter=2,
                )
            )
            result.add(
                stats.RTCTransportStats(
                    timestamp=moment,
                    type="transport",
                    id="transport_1",
                    packetsSent=10,
                    packetsReceived=packets,
                    bytesSent=500,
                    bytesReceived=received_bytes,
                    iceRole="controlling",
                    dtlsState="connected",
                )
            )
            return result

        reports = [report(10, 1_000), report(110, 126_000)]
        frames = [FrameCount(0), FrameCount(24, 1280, 720)]

        async def stats_source():
            return reports.pop(0)

        sampler = TelemetrySampler(
            stats_source,
            frame_source=lambda: frames.pop(0),
            system_metrics=_host,
            clock=FakeClock(1.0, 2.0),
        )
        await sampler.sample_once()
        sample = await sampler.sample_once()

        assert sample.fps == pytest.approx(24.0)
        assert sample.bitrate_kbps == pytest.approx(1000.0)
        assert (sample.width, sample.height) == (1280, 720)
        assert sample.jitter == 2.0
        assert sample.rtt_ms is None
        assert sample.frames_dropped is None

    run_async(_test())


def test_unreported_counters_are_unavailable_rather_than_zero():
    async def _test() -> None:
        async def stats_source():
            return {"in": {"type": "inbound-rtp", "kind": "video", "packetsReceived": 10}}

        sampler = TelemetrySampler(stats_source, system_metrics=_host, clock=FakeClock(1.0, 2.0))
        await sampler.sample_once()
        sample = await sampler.sample_once()

        assert sample.fps is None
        assert sample.bitrate_kbps is None
        assert sample.rtt_ms is None
        assert sample.frames_dropped is None
        assert sample.to_dict()["fps"] is None

    run_async(_test())


def test_frame_source_without_a_track_yet_leaves_fps_unavailable():
    async def _test() -> None:
        async def stats_source():
            return {}

        sampler = TelemetrySampler(stats_source, frame_source=lambda: None, system_metrics=_host)
        sample = await sampler.sample_once()
        assert sample.fps is None

    run_async(_test())
