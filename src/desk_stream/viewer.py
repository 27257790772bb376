"""Viewer orchestration: negotiation, telemetry evaluation and adaptation."""
from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import logging
import sys
from pathlib import Path
from typing import Any, Callable, Sequence

from .channel import WebSocketChannel
from .config import AdaptiveSettings, CaptureConfig, ConfigManager, parse_resolution
from .errors import StreamError
from .event_log import EventLog
from .negotiation import SessionNegotiator
from .performance import PerformanceEvaluator
from .quality import AdaptiveQualityController, ProfilePolicy, QualityProfile
from .telemetry import MetricSample
from .version import APP_VERSION

try:  # pragma: no cover - optional dependency
    from aiortc import RTCConfiguration, RTCIceServer, RTCPeerConnection
    from aiortc.contrib.media import MediaBlackhole
except ImportError as exc:  # pragma: no cover - handled at runtime
    RTCConfiguration = RTCIceServer = RTCPeerConnection = None  # type: ignore[assignment]
    MediaBlackhole = None  # type: ignore[assignment]
    _AIORTC_IMPORT_ERROR: ImportError | None = exc
else:  # pragma: no cover - executed when dependency is installed
    _AIORTC_IMPORT_ERROR = None


logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path("config/viewer.json")
DEFAULT_ICE_SERVERS: tuple[str, ...] = (
    "stun:stun.l.google.com:19302",
    "stun:stun1.l.google.com:19302",
)


def create_peer_connection(ice_servers: Sequence[str] = DEFAULT_ICE_SERVERS) -> "RTCPeerConnection":
    if _AIORTC_IMPORT_ERROR is not None:
        raise RuntimeError(
            "aiortc is required for the viewer. Install the 'aiortc' package to enable streaming."
        ) from _AIORTC_IMPORT_ERROR
    servers = [RTCIceServer(urls=url) for url in ice_servers]
    return RTCPeerConnection(configuration=RTCConfiguration(iceServers=servers))


class ViewerSession:
    """Wire a negotiator to the performance evaluator and quality controller.

    Samples reported by the negotiator are graded and fed to the quality
    controller. When ``auto_renegotiate`` is enabled a suggested profile is
    applied through :meth:`SessionNegotiator.renegotiate` on a separate task,
    one renegotiation at a time. Received tracks are handed to *sink*, an
    object with the ``MediaBlackhole`` interface, which pulls their frames.
    """

    def __init__(
        self,
        negotiator: SessionNegotiator,
        *,
        evaluator: PerformanceEvaluator | None = None,
        controller: AdaptiveQualityController | None = None,
        adaptive: AdaptiveSettings | None = None,
        sink: Any = None,
    ) -> None:
        adaptive = adaptive or AdaptiveSettings()
        self.negotiator = negotiator
        self.evaluator = evaluator or PerformanceEvaluator()
        self.controller = controller or AdaptiveQualityController(
            policy=ProfilePolicy.from_settings(adaptive)
        )
        self.auto_renegotiate = adaptive.auto_renegotiate
        self._renegotiation: asyncio.Task[None] | None = None
        self._suggested: QualityProfile | None = None
        self._sink = sink
        self._sink_starts: set[asyncio.Task[None]] = set()
        negotiator.on_sample(self._handle_sample)
        if sink is not None:
            negotiator.on_track(self._handle_track)

    @property
    def suggested_profile(self) -> QualityProfile | None:
        return self._suggested

    async def start(self, config: CaptureConfig | None = None) -> None:
        await self.negotiator.connect(config)

    async def stop(self) -> None:
        task = self._renegotiation
        self._renegotiation = None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        await self.negotiator.disconnect()
        await self._stop_sink()

    def snapshot(self) -> dict[str, Any]:
        payload = self.evaluator.export()
        payload["status"] = self.negotiator.status
        payload["state"] = self.negotiator.state.value
        active = self.controller.active
        payload["profile"] = active.to_dict() if active else None
        payload["suggested_profile"] = self._suggested.to_dict() if self._suggested else None
        return payload

    def _handle_sample(self, sample: MetricSample) -> None:
        evaluation = self.evaluator.evaluate(sample)
        for issue in evaluation.issues:
            if issue.severity == "critical":
                logger.warning("%s (%s)", issue.message, issue.suggestion)
        profile = self.controller.propose(sample)
        if profile is None:
            return
        self._suggested = profile
        if not self.auto_renegotiate:
            return
        if self._renegotiation is not None and not self._renegotiation.done():
            return
        self._renegotiation = asyncio.create_task(self._apply_profile(profile))

    def _handle_track(self, track: Any) -> None:
        self._sink.addTrack(track)
        task = asyncio.create_task(self._sink.start())
        self._sink_starts.add(task)
        task.add_done_callback(self._sink_starts.discard)

    async def _stop_sink(self) -> None:
        if self._sink is None:
            return
        starts = list(self._sink_starts)
        if starts:
            await asyncio.gather(*starts, return_exceptions=True)
        await self._sink.stop()

    async def _apply_profile(self, profile: QualityProfile) -> None:
        config = profile.apply_to(self.negotiator.config)
        self.negotiator.event_log.record(
            "info",
            "renegotiate",
            f"Applying {profile.label} profile ({profile.width}x{profile.height}@{profile.framerate})",
            category="quality",
        )
        try:
            await self.negotiator.renegotiate(config)
        except StreamError as exc:
            logger.warning("Renegotiation failed: %s", exc)
            return
        self.controller.mark_applied(profile)


def create_viewer(
    manager: ConfigManager,
    *,
    event_log: EventLog | None = None,
    peer_factory: Callable[[], Any] = create_peer_connection,
    sink: Any = None,
) -> ViewerSession:
    """Build a :class:`ViewerSession` from persisted configuration.

    Without an explicit *sink*, received media is drained into a
    ``MediaBlackhole`` when aiortc is installed.
    """

    url = manager.get_signaling_url()
    telemetry = manager.get_telemetry_settings()

    async def _open_channel() -> WebSocketChannel:
        return await WebSocketChannel.connect(url)

    negotiator = SessionNegotiator(
        _open_channel,
        peer_factory,
        config=manager.get_capture_config(),
        event_log=event_log,
        telemetry_interval=telemetry.interval_seconds,
    )
    if sink is None and MediaBlackhole is not None:
        sink = MediaBlackhole()
    return ViewerSession(negotiator, adaptive=manager.get_adaptive_settings(), sink=sink)


def build_parser() -> argparse.ArgumentParser:
    """Return the argument parser for the viewer CLI."""

    parser = argparse.ArgumentParser(
        prog="python -m desk_stream.viewer",
        description="Connect to a desk_stream producer and report stream quality",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=DEFAULT_CONFIG_PATH,
        help="Path of the viewer configuration file.",
    )
    parser.add_argument("--url", help="Signaling websocket URL, e.g. ws://host:3000/ws.")
    parser.add_argument("--source-type", help="Capture source requested from the producer.")
    parser.add_argument("--resolution", help="Requested resolution as WIDTHxHEIGHT.")
    parser.add_argument("--framerate", type=int, help="Requested frame rate.")
    parser.add_argument(
        "--duration",
        type=float,
        default=10.0,
        help="Seconds to stay connected before reporting (0 runs until interrupted).",
    )
    parser.add_argument(
        "--auto-renegotiate",
        action="store_true",
        help="Apply suggested quality profiles automatically.",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Emit the final metrics snapshot as JSON.",
    )
    return parser


def _apply_overrides(manager: ConfigManager, args: argparse.Namespace) -> None:
    if args.url:
        manager.set_signaling_url(args.url)
    overrides: dict[str, Any] = {}
    if args.source_type:
        overrides["source_type"] = args.source_type
    if args.resolution:
        overrides["resolution"] = parse_resolution(
            args.resolution, default=manager.get_capture_config().resolution
        )
    if args.framerate is not None:
        overrides["framerate"] = args.framerate
    if overrides:
        manager.set_capture_config(overrides)
    if args.auto_renegotiate:
        manager.set_adaptive_settings({"auto_renegotiate": True})


async def _run_session(viewer: ViewerSession, duration: float) -> None:
    await viewer.start()
    try:
        if duration > 0:
            await asyncio.sleep(duration)
        else:
            await asyncio.Event().wait()
    finally:
        await viewer.stop()


def _print_summary(snapshot: dict[str, Any], event_log: EventLog) -> None:
    print(f"desk_stream viewer (version {APP_VERSION})")
    print(f"Status: {snapshot.get('status')}")
    grade = snapshot.get("grade") or {}
    print(f"Score: {snapshot.get('score')} ({grade.get('grade')} - {grade.get('description')})")
    for issue in snapshot.get("issues", []):
        print(f" - [{issue['severity']}] {issue['message']}")
    suggestions = snapshot.get("suggestions", [])
    if suggestions:
        print("Suggestions:")
        for suggestion in suggestions:
            print(f" * {suggestion['title']}: {suggestion['description']}")
    profile = snapshot.get("suggested_profile")
    if profile:
        print(f"Suggested profile: {profile['label']} {profile['resolution']}@{profile['framerate']}")
    errors = event_log.tail(5, severity="error")
    if errors:
        print("Recent errors:")
        for entry in errors:
            print(f" - {entry.message}")


def run(argv: Sequence[str] | None = None) -> int:
    """Execute the viewer CLI with *argv* arguments."""

    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    try:
        manager = ConfigManager(args.config)
        _apply_overrides(manager, args)
    except (RuntimeError, ValueError) as exc:
        parser.error(str(exc))

    event_log = EventLog(mirror_to_logging=False)
    viewer = create_viewer(manager, event_log=event_log)
    try:
        asyncio.run(_run_session(viewer, args.duration))
    except KeyboardInterrupt:  # pragma: no cover - interactive use
        pass
    except StreamError as exc:
        print(f"Connection failed: {exc}", file=sys.stderr)
        return 1

    snapshot = viewer.snapshot()
    if args.json:
        json.dump(snapshot, sys.stdout)
        sys.stdout.write("\n")
    else:
        _print_summary(snapshot, event_log)
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point used by `python -m desk_stream.viewer`."""

    return run(argv)


__all__ = [
    "DEFAULT_ICE_SERVERS",
    "ViewerSession",
    "build_parser",
    "create_peer_connection",
    "create_viewer",
    "main",
    "run",
]


if __name__ == "__main__":  # pragma: no cover - module behaviour
    sys.exit(main())
