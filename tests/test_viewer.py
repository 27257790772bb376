import asyncio
from pathlib import Path

import pytest

from desk_stream.config import AdaptiveSettings, CaptureConfig, ConfigManager, Resolution
from desk_stream.errors import NegotiationFailed
from desk_stream.event_log import EventLog
from desk_stream.negotiation import NegotiationState
from desk_stream.quality import HIGH_PROFILE, MEDIUM_PROFILE
from desk_stream.telemetry import MetricSample
from desk_stream.viewer import ViewerSession, build_parser, create_viewer, run

HEALTHY = MetricSample(fps=30, rtt_ms=30, cpu_percent=20, memory_percent=40)
SLOW = MetricSample(fps=18, rtt_ms=30, cpu_percent=20, memory_percent=40)


def run_async(coro):
    return asyncio.run(coro)


class StubNegotiator:
    def __init__(self, *, fail: bool = False, gate: asyncio.Event | None = None) -> None:
        self.config = CaptureConfig(source_type="x11-0")
        self.event_log = EventLog(mirror_to_logging=False)
        self.state = NegotiationState.CONNECTED
        self.status = "Connected"
        self.fail = fail
        self.gate = gate
        self.renegotiated: list[CaptureConfig] = []
        self.connects: list[CaptureConfig | None] = []
        self.disconnects = 0
        self._callbacks: list = []
        self.track_callbacks: list = []

    def on_sample(self, callback) -> None:
        self._callbacks.append(callback)

    def on_track(self, callback) -> None:
        self.track_callbacks.append(callback)

    def emit(self, sample: MetricSample) -> None:
        for callback in self._callbacks:
            callback(sample)

    async def connect(self, config: CaptureConfig | None = None) -> None:
        self.connects.append(config)

    async def disconnect(self) -> None:
        self.disconnects += 1

    async def renegotiate(self, config: CaptureConfig) -> None:
        self.renegotiated.append(config)
        if self.gate is not None:
            await self.gate.wait()
        if self.fail:
            raise NegotiationFailed("producer refused")
        self.config = config


async def settle() -> None:
    for _ in range(5):
        await asyncio.sleep(0)


def test_samples_are_graded_and_profile_suggested_without_renegotiating():
    async def _test() -> None:
        negotiator = StubNegotiator()
        viewer = ViewerSession(negotiator)
        negotiator.emit(HEALTHY)
        negotiator.emit(SLOW)
        await settle()

        assert negotiator.renegotiated == []
        assert viewer.suggested_profile == MEDIUM_PROFILE
        snapshot = viewer.snapshot()
        assert snapshot["status"] == "Connected"
        assert snapshot["state"] == "connected"
        assert snapshot["profile"]["label"] == "high"
        assert snapshot["suggested_profile"]["label"] == "medium"
        assert snapshot["score"] == 80
        assert snapshot["history"]["fps"] == [30.0, 18.0]

    run_async(_test())


def test_auto_renegotiation_applies_suggested_profile():
    async def _test() -> None:
        negotiator = StubNegotiator()
        viewer = ViewerSession(negotiator, adaptive=AdaptiveSettings(auto_renegotiate=True))
        negotiator.emit(SLOW)
        await settle()

        assert len(negotiator.renegotiated) == 1
        applied = negotiator.renegotiated[0]
        assert applied.resolution == Resolution(1280, 720)
        assert applied.framerate == 24
        assert applied.source_type == "x11-0"
        assert viewer.controller.active == MEDIUM_PROFILE
        assert negotiator.event_log.tail(event="renegotiate")

        negotiator.emit(SLOW)
        await settle()
        assert len(negotiator.renegotiated) == 1

    run_async(_test())


def test_only_one_renegotiation_runs_at_a_time():
    async def _test() -> None:
        gate = asyncio.Event()
        negotiator = StubNegotiator(gate=gate)
        viewer = ViewerSession(negotiator, adaptive=AdaptiveSettings(auto_renegotiate=True))
        negotiator.emit(SLOW)
        await settle()
        negotiator.emit(MetricSample(fps=10))
        await settle()
        assert len(negotiator.renegotiated) == 1

        gate.set()
        await settle()
        assert viewer.controller.active == MEDIUM_PROFILE

    run_async(_test())


def test_failed_renegotiation_keeps_active_profile():
    async def _test() -> None:
        negotiator = StubNegotiator(fail=True)
        viewer = ViewerSession(negotiator, adaptive=AdaptiveSettings(auto_renegotiate=True))
        negotiator.emit(SLOW)
        await settle()
        assert viewer.controller.active == HIGH_PROFILE

    run_async(_test())


def test_stop_cancels_pending_renegotiation_and_disconnects():
    async def _test() -> None:
        negotiator = StubNegotiator(gate=asyncio.Event())
        viewer = ViewerSession(negotiator, adaptive=AdaptiveSettings(auto_renegotiate=True))
        await viewer.start(CaptureConfig(framerate=15))
        negotiator.emit(SLOW)
        await settle()

        await viewer.stop()
        assert negotiator.connects[0].framerate == 15
        assert negotiator.disconnects == 1
        assert viewer.controller.active == HIGH_PROFILE

    run_async(_test())


def test_create_viewer_uses_persisted_settings(tmp_path: Path):
    manager = ConfigManager(tmp_path / "viewer.json")
    manager.set_capture_config({"source_type": "x11-2", "framerate": 20})
    manager.set_telemetry_settings({"interval_seconds": 2})
    manager.set_adaptive_settings({"auto_renegotiate": True})

    viewer = create_viewer(manager, peer_factory=lambda: None)
    assert viewer.negotiator.config.source_type == "x11-2"
    assert viewer.negotiator.config.framerate == 20
    assert viewer.negotiator.state is NegotiationState.IDLE
    assert viewer.auto_renegotiate is True


def test_parser_defaults():
    args = build_parser().parse_args([])
    assert args.duration == 10.0
    assert args.auto_renegotiate is False
    assert args.json is False


def test_run_reports_unreachable_producer(tmp_path: Path, capsys: pytest.CaptureFixture[str]):
    config_file = tmp_path / "viewer.json"
    status = run(
        [
            "--config",
            str(config_file),
            "--url",
            "ws://127.0.0.1:9/ws",
            "--resolution",
            "1280x720",
            "--framerate",
            "24",
            "--duration",
            "0.1",
        ]
    )
    assert status == 1
    assert "Connection failed" in capsys.readouterr().err

    saved = ConfigManager(config_file)
    assert saved.get_signaling_url() == "ws://127.0.0.1:9/ws"
    assert saved.get_capture_config().resolution == Resolution(1280, 720)
    assert saved.get_capture_config().framerate == 24


class RecordingSink:
    def __init__(self) -> None:
        self.tracks: list[object] = []
        self.starts = 0
        self.stopped = False

    def addTrack(self, track) -> None:
        self.tracks.append(track)

    async def start(self) -> None:
        self.starts += 1

    async def stop(self) -> None:
        self.stopped = True


def test_received_tracks_are_drained_into_the_sink():
    async def _test() -> None:
        negotiator = StubNegotiator()
        sink = RecordingSink()
        viewer = ViewerSession(negotiator, sink=sink)
        track = object()
        for callback in negotiator.track_callbacks:
            callback(track)
        await settle()

        assert sink.tracks == [track]
        assert sink.starts == 1
        await viewer.stop()
        assert sink.stopped is True

    run_async(_test())


def test_viewer_without_sink_ignores_tracks():
    negotiator = StubNegotiator()
    ViewerSession(negotiator)
    assert negotiator.track_callbacks == []


def test_create_viewer_keeps_a_supplied_empty_event_log(tmp_path: Path):
    log = EventLog(mirror_to_logging=False)
    sink = RecordingSink()
    viewer = create_viewer(
        ConfigManager(tmp_path / "viewer.json"), event_log=log, peer_factory=lambda: None, sink=sink
    )
    assert viewer.negotiator.event_log is log
