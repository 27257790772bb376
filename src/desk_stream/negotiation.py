"""Peer-connection negotiation state machine for the viewer.

A :class:`SessionNegotiator` owns at most one :class:`NegotiationSession`.
Every mutation of that session happens on a single dispatcher task that
drains an :class:`asyncio.Queue` of events; channel and peer-connection
callbacks never touch the session directly, they only post events. Events
that belong to a session which has since been torn down are dropped.
"""
from __future__ import annotations

import asyncio
import contextlib
import enum
import logging
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from .candidates import Candidate, CandidateQueue
from .channel import SignalingChannel
from .config import DEFAULT_CAPTURE_CONFIG, CaptureConfig
from .errors import (
    ChannelClosed,
    DeviceAccessDenied,
    MalformedMessage,
    NegotiationFailed,
)
from .event_log import EventLog
from .media import FrameCountingTrack
from .signaling import (
    MESSAGE_CLASSES,
    Answer,
    AudioDeviceInfo,
    AudioDeviceList,
    ErrorMessage,
    IceCandidateMessage,
    Offer,
    SignalingMessage,
    SourceInfo,
    SourceList,
)
from .telemetry import FrameCount, MetricSample, TelemetrySampler

if TYPE_CHECKING:  # pragma: no cover - imported for type checkers only
    from aiortc import RTCPeerConnection

try:  # pragma: no cover - optional dependency
    from aiortc import RTCSessionDescription as _RTCSessionDescription
except ImportError as exc:  # pragma: no cover - handled at runtime
    _RTCSessionDescription = None  # type: ignore[assignment]
    _AIORTC_IMPORT_ERROR: ImportError | None = exc
else:  # pragma: no cover - executed when dependency is installed
    _AIORTC_IMPORT_ERROR = None


logger = logging.getLogger(__name__)

ChannelFactory = Callable[[], Awaitable[SignalingChannel]]
PeerFactory = Callable[[], "RTCPeerConnection"]
MicrophoneProvider = Callable[[], Awaitable[Any]]
SamplerFactory = Callable[..., TelemetrySampler]


def _ensure_aiortc_available() -> None:
    if _AIORTC_IMPORT_ERROR is not None:
        raise RuntimeError(
            "aiortc is required for WebRTC negotiation. Install the 'aiortc' package."
        ) from _AIORTC_IMPORT_ERROR


class NegotiationState(str, enum.Enum):
    IDLE = "idle"
    NEGOTIATING = "negotiating"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    FAILED = "failed"
    CLOSED = "closed"


class ConnectionState(str, enum.Enum):
    """Connection state reported by the peer-connection object."""

    NEW = "new"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    FAILED = "failed"
    CLOSED = "closed"


_STATUS_TEXT = {
    NegotiationState.IDLE: "Disconnected",
    NegotiationState.NEGOTIATING: "Connecting...",
    NegotiationState.CONNECTED: "Connected",
    NegotiationState.DISCONNECTED: "Disconnected",
    NegotiationState.FAILED: "Connection lost",
    NegotiationState.CLOSED: "Connection closed",
}


@dataclass(eq=False)
class NegotiationSession:
    """State of one connection attempt. Never reused."""

    peer: Any
    channel: SignalingChannel
    config: CaptureConfig
    candidates: CandidateQueue = field(default_factory=CandidateQueue)
    local_description_set: bool = False
    remote_description_set: bool = False
    connection_state: ConnectionState = ConnectionState.NEW
    closed: bool = False
    video_frames: FrameCountingTrack | None = None


# ------------------------------- events ----------------------------------
@dataclass(frozen=True, eq=False)
class _StartOffer:
    session: NegotiationSession
    done: asyncio.Future


@dataclass(frozen=True, eq=False)
class _InboundMessage:
    session: NegotiationSession
    message: SignalingMessage


@dataclass(frozen=True, eq=False)
class _MalformedFrame:
    session: NegotiationSession
    error: MalformedMessage


@dataclass(frozen=True, eq=False)
class _ChannelLost:
    session: NegotiationSession
    error: BaseException | None = None


@dataclass(frozen=True, eq=False)
class _ConnectionStateChanged:
    session: NegotiationSession
    state: str


@dataclass(frozen=True, eq=False)
class _TrackReceived:
    session: NegotiationSession
    track: Any


@dataclass(frozen=True, eq=False)
class _LocalCandidate:
    session: NegotiationSession
    candidate: Candidate


@dataclass(frozen=True, eq=False)
class _SampleTaken:
    session: NegotiationSession
    sample: MetricSample


@dataclass(frozen=True, eq=False)
class _AnswerTimeout:
    session: NegotiationSession


_Event = (
    _StartOffer
    | _InboundMessage
    | _MalformedFrame
    | _ChannelLost
    | _ConnectionStateChanged
    | _TrackReceived
    | _LocalCandidate
    | _SampleTaken
    | _AnswerTimeout
)


class SessionNegotiator:
    """Drive offer/answer and candidate exchange over a signaling channel."""

    _MESSAGE_HANDLERS: dict[type, str] = {
        Offer: "_on_offer",
        Answer: "_on_answer",
        IceCandidateMessage: "_on_remote_candidate",
        SourceList: "_on_sources",
        AudioDeviceList: "_on_audio_devices",
        ErrorMessage: "_on_server_error",
    }

    _EVENT_HANDLERS: dict[type, str] = {
        _StartOffer: "_handle_start_offer",
        _InboundMessage: "_handle_inbound",
        _MalformedFrame: "_handle_malformed",
        _ChannelLost: "_handle_channel_lost",
        _ConnectionStateChanged: "_handle_connection_state",
        _TrackReceived: "_handle_track",
        _LocalCandidate: "_handle_local_candidate",
        _SampleTaken: "_handle_sample",
        _AnswerTimeout: "_handle_answer_timeout",
    }

    def __init__(
        self,
        channel_factory: ChannelFactory,
        peer_factory: PeerFactory,
        *,
        config: CaptureConfig = DEFAULT_CAPTURE_CONFIG,
        microphone: MicrophoneProvider | None = None,
        event_log: EventLog | None = None,
        telemetry_interval: float = 1.0,
        sampler_factory: SamplerFactory = TelemetrySampler,
        answer_timeout: float | None = None,
    ) -> None:
        self._channel_factory = channel_factory
        self._peer_factory = peer_factory
        self._config = config
        self._microphone = microphone
        self._event_log = event_log if event_log is not None else EventLog()
        self._telemetry_interval = telemetry_interval
        self._sampler_factory = sampler_factory
        self._answer_timeout = answer_timeout

        self._lock = asyncio.Lock()
        self._state = NegotiationState.IDLE
        self._status = _STATUS_TEXT[self._state]
        self._session: NegotiationSession | None = None
        self._queue: asyncio.Queue[_Event] | None = None
        self._dispatcher: asyncio.Task[None] | None = None
        self._sampler: TelemetrySampler | None = None
        self._pending_offer: asyncio.Future | None = None
        self._answer_timer: asyncio.TimerHandle | None = None
        self._released: asyncio.Future | None = None

        self.sources: tuple[SourceInfo, ...] = ()
        self.audio_devices: tuple[AudioDeviceInfo, ...] = ()

        self._state_observers: list[Callable[[NegotiationState], None]] = []
        self._sample_observers: list[Callable[[MetricSample], None]] = []
        self._track_observers: list[Callable[[Any], None]] = []
        self._source_observers: list[Callable[[tuple[SourceInfo, ...]], None]] = []
        self._audio_device_observers: list[Callable[[tuple[AudioDeviceInfo, ...]], None]] = []

    # ------------------------------------------------------------ accessors
    @property
    def state(self) -> NegotiationState:
        return self._state

    @property
    def status(self) -> str:
        """One-line user-visible status."""

        return self._status

    @property
    def session(self) -> NegotiationSession | None:
        return self._session

    @property
    def config(self) -> CaptureConfig:
        return self._config

    @property
    def event_log(self) -> EventLog:
        return self._event_log

    @property
    def telemetry_running(self) -> bool:
        return self._sampler is not None and self._sampler.running

    # ------------------------------------------------------------ observers
    def on_state_change(self, callback: Callable[[NegotiationState], None]) -> None:
        self._state_observers.append(callback)

    def on_sample(self, callback: Callable[[MetricSample], None]) -> None:
        self._sample_observers.append(callback)

    def on_track(self, callback: Callable[[Any], None]) -> None:
        self._track_observers.append(callback)

    def on_sources(self, callback: Callable[[tuple[SourceInfo, ...]], None]) -> None:
        self._source_observers.append(callback)

    def on_audio_devices(self, callback: Callable[[tuple[AudioDeviceInfo, ...]], None]) -> None:
        self._audio_device_observers.append(callback)

    # ------------------------------------------------------------ public API
    async def connect(self, config: CaptureConfig | None = None) -> None:
        """Tear down any existing session and negotiate a new one.

        Raises :class:`ChannelClosed` when the signaling server cannot be
        reached and :class:`NegotiationFailed` when the offer cannot be
        produced. Neither leaves an active session behind.
        """

        async with self._lock:
            await self._teardown()
            if config is not None:
                self._config = config
            self._event_log.record("info", "connect", "Starting WebRTC connection")

            try:
                channel = await self._channel_factory()
            except ChannelClosed as exc:
                self._event_log.record("error", "channel-unavailable", str(exc))
                self._set_state(NegotiationState.IDLE, "Connection error")
                raise

            try:
                peer = self._peer_factory()
            except Exception as exc:
                with contextlib.suppress(Exception):
                    await channel.close()
                self._set_state(NegotiationState.FAILED, "Error")
                raise NegotiationFailed(f"Unable to create peer connection: {exc}") from exc

            session = NegotiationSession(peer=peer, channel=channel, config=self._config)
            self._session = session
            self._queue = asyncio.Queue()
            self._wire_channel(session)
            self._wire_peer(session)
            self._set_state(NegotiationState.NEGOTIATING)

            try:
                await self._add_transceivers(session)
            except Exception as exc:
                await self._teardown()
                self._set_state(NegotiationState.FAILED, "Error")
                raise NegotiationFailed(f"Unable to configure media: {exc}") from exc

            self._dispatcher = asyncio.create_task(self._dispatch_loop(session, self._queue))
            done: asyncio.Future = asyncio.get_running_loop().create_future()
            self._pending_offer = done
            self._post(_StartOffer(session, done))
            try:
                await done
            except ChannelClosed as exc:
                await self._teardown()
                self._event_log.record("error", "offer-failed", f"Offer not sent: {exc}")
                self._set_state(NegotiationState.IDLE, "Connection error")
                raise
            except asyncio.CancelledError:
                await self._teardown()
                self._set_state(NegotiationState.IDLE)
                raise
            except Exception as exc:
                await self._teardown()
                self._event_log.record("error", "offer-failed", f"Unable to create offer: {exc}")
                self._set_state(NegotiationState.FAILED, "Error")
                raise NegotiationFailed(f"Unable to create offer: {exc}") from exc
            finally:
                self._pending_offer = None

    async def disconnect(self) -> None:
        """Release every session resource and return to ``idle``.

        Safe in any state; a second call is a no-op.
        """

        async with self._lock:
            torn_down = await self._teardown()
            if not torn_down and self._state is NegotiationState.IDLE:
                return
            self._event_log.record("info", "disconnect", "Disconnected")
            self._set_state(NegotiationState.IDLE)

    async def renegotiate(self, config: CaptureConfig) -> None:
        """Apply *config* by replacing the current session with a new one."""

        await self.disconnect()
        await self.connect(config)

    # ------------------------------------------------------------ wiring
    def _post(self, event: _Event) -> None:
        if event.session is not self._session or self._queue is None:
            return
        self._queue.put_nowait(event)

    def _wire_channel(self, session: NegotiationSession) -> None:
        channel = session.channel

        def _on_error(error: BaseException) -> None:
            if isinstance(error, MalformedMessage):
                self._post(_MalformedFrame(session, error))
            else:
                self._post(_ChannelLost(session, error))

        channel.on_message(lambda message: self._post(_InboundMessage(session, message)))
        channel.on_error(_on_error)
        channel.on_close(lambda: self._post(_ChannelLost(session)))

    def _wire_peer(self, session: NegotiationSession) -> None:
        peer = session.peer

        def _on_connection_state() -> None:
            self._post(_ConnectionStateChanged(session, str(peer.connectionState)))

        def _on_track(track: Any) -> None:
            self._post(_TrackReceived(session, track))

        def _on_ice_candidate(candidate: Any) -> None:
            if candidate is None:
                return
            if not isinstance(candidate, Candidate):
                candidate = Candidate.from_rtc(candidate)
            self._post(_LocalCandidate(session, candidate))

        peer.on("connectionstatechange", _on_connection_state)
        peer.on("track", _on_track)
        peer.on("icecandidate", _on_ice_candidate)

    async def _add_transceivers(self, session: NegotiationSession) -> None:
        config = session.config
        microphone_track = None
        if config.enable_microphone_input and self._microphone is not None:
            try:
                microphone_track = await self._microphone()
            except DeviceAccessDenied as exc:
                self._event_log.record(
                    "warning",
                    "microphone-denied",
                    f"Microphone unavailable, continuing without it: {exc}",
                )
                session.config = replace(config, enable_microphone_input=False)

        session.peer.addTransceiver("video", direction="recvonly")
        if microphone_track is not None:
            session.peer.addTransceiver(microphone_track, direction="sendrecv")
            self._event_log.record("info", "microphone", "Microphone track added")
        else:
            session.peer.addTransceiver("audio", direction="recvonly")

    # ------------------------------------------------------------ dispatcher
    async def _dispatch_loop(
        self, session: NegotiationSession, queue: asyncio.Queue[_Event]
    ) -> None:
        while not session.closed:
            event = await queue.get()
            if event.session is not self._session or session.closed:
                continue
            handler = getattr(self, self._EVENT_HANDLERS[type(event)])
            try:
                await handler(event)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Unhandled error while processing %s", type(event).__name__)

    async def _handle_start_offer(self, event: _StartOffer) -> None:
        session = event.session
        try:
            offer = await session.peer.createOffer()
            await session.peer.setLocalDescription(offer)
            session.local_description_set = True
            local = session.peer.localDescription or offer
            await session.channel.send(Offer(sdp=local.sdp, config=session.config))
        except Exception as exc:
            if not event.done.done():
                event.done.set_exception(exc)
            return
        self._event_log.record("info", "offer-sent", "Offer sent to producer")
        if self._answer_timeout is not None:
            loop = asyncio.get_running_loop()
            self._answer_timer = loop.call_later(
                self._answer_timeout, self._post, _AnswerTimeout(session)
            )
        if not event.done.done():
            event.done.set_result(None)

    async def _handle_inbound(self, event: _InboundMessage) -> None:
        handler = getattr(self, self._MESSAGE_HANDLERS[type(event.message)])
        await handler(event.session, event.message)

    async def _handle_malformed(self, event: _MalformedFrame) -> None:
        self._event_log.record(
            "warning",
            "discard",
            f"Discarded malformed signaling frame: {event.error}",
            category="signaling",
        )

    async def _handle_channel_lost(self, event: _ChannelLost) -> None:
        if self._state not in (NegotiationState.NEGOTIATING, NegotiationState.CONNECTED):
            return
        detail = f": {event.error}" if event.error is not None else ""
        self._event_log.record("warning", "channel-closed", f"Signaling channel closed{detail}")
        await self._teardown(NegotiationState.DISCONNECTED)

    async def _handle_connection_state(self, event: _ConnectionStateChanged) -> None:
        session = event.session
        try:
            state = ConnectionState(event.state)
        except ValueError:
            logger.debug("Ignoring unknown connection state %r", event.state)
            return
        session.connection_state = state
        self._event_log.record("debug", "connection-state", f"Connection state: {state.value}")

        if state is ConnectionState.CONNECTED:
            if self._state is NegotiationState.CONNECTED:
                return
            self._cancel_answer_timer()
            self._set_state(NegotiationState.CONNECTED)
            self._event_log.record("success", "connected", "Streaming active")
            self._start_telemetry(session)
        elif state in (ConnectionState.DISCONNECTED, ConnectionState.FAILED):
            self._event_log.record("error", "connection-lost", "Connection lost")
            await self._teardown(NegotiationState.FAILED)
        elif state is ConnectionState.CLOSED:
            self._event_log.record("warning", "connection-closed", "Connection closed")
            await self._teardown(NegotiationState.CLOSED)

    async def _handle_track(self, event: _TrackReceived) -> None:
        track = event.track
        kind = getattr(track, "kind", "unknown")
        self._event_log.record("success", "track", f"Track received: {kind}")
        if kind == "video":
            track = FrameCountingTrack(track)
            event.session.video_frames = track
        self._notify(self._track_observers, track)

    async def _handle_local_candidate(self, event: _LocalCandidate) -> None:
        session = event.session
        if not session.remote_description_set:
            session.candidates.push(event.candidate)
            return
        await self._send_candidate(session, event.candidate)

    async def _handle_sample(self, event: _SampleTaken) -> None:
        if self._state is not NegotiationState.CONNECTED:
            return
        self._notify(self._sample_observers, event.sample)

    async def _handle_answer_timeout(self, event: _AnswerTimeout) -> None:
        self._answer_timer = None
        if self._state is not NegotiationState.NEGOTIATING or event.session.remote_description_set:
            return
        self._event_log.record("error", "answer-timeout", "No answer received from producer")
        await self._teardown(NegotiationState.FAILED, "Timed out waiting for answer")

    # ------------------------------------------------------------ messages
    async def _on_offer(self, session: NegotiationSession, message: Offer) -> None:
        logger.warning("Ignoring offer received from producer")

    async def _on_answer(self, session: NegotiationSession, message: Answer) -> None:
        if self._state is not NegotiationState.NEGOTIATING or session.remote_description_set:
            logger.warning("Ignoring answer received in state %s", self._state.value)
            return
        _ensure_aiortc_available()
        try:
            await session.peer.setRemoteDescription(
                _RTCSessionDescription(sdp=message.sdp, type="answer")
            )
        except Exception as exc:
            self._event_log.record("error", "answer-rejected", f"Unable to apply answer: {exc}")
            await self._teardown(NegotiationState.FAILED, "Error")
            return
        session.remote_description_set = True
        self._event_log.record("success", "answer", "Remote description applied")
        for candidate in session.candidates.drain():
            await self._send_candidate(session, candidate)

    async def _on_remote_candidate(
        self, session: NegotiationSession, message: IceCandidateMessage
    ) -> None:
        try:
            candidate = Candidate.from_json(message.candidate)
            if candidate.is_end_of_candidates:
                logger.debug("Remote end-of-candidates received")
                return
            await session.peer.addIceCandidate(candidate.to_rtc())
        except MalformedMessage as exc:
            self._event_log.record(
                "warning", "discard", f"Discarded ICE candidate: {exc}", category="signaling"
            )
            return
        except Exception as exc:
            self._event_log.record("warning", "candidate-rejected", f"ICE candidate rejected: {exc}")
            return
        logger.debug("Remote ICE candidate applied")

    async def _on_sources(self, session: NegotiationSession, message: SourceList) -> None:
        self.sources = message.sources
        self._event_log.record("info", "sources", f"{len(message.sources)} capture sources available")
        self._notify(self._source_observers, message.sources)

    async def _on_audio_devices(self, session: NegotiationSession, message: AudioDeviceList) -> None:
        self.audio_devices = message.devices
        self._event_log.record("info", "audio-devices", f"{len(message.devices)} audio devices available")
        self._notify(self._audio_device_observers, message.devices)

    async def _on_server_error(self, session: NegotiationSession, message: ErrorMessage) -> None:
        self._event_log.record("error", "server-error", f"Server error: {message.message}")
        self._status = "Error"

    # ------------------------------------------------------------ helpers
    async def _send_candidate(self, session: NegotiationSession, candidate: Candidate) -> None:
        try:
            await session.channel.send(IceCandidateMessage(candidate=candidate.to_json()))
        except ChannelClosed as exc:
            logger.warning("Unable to send ICE candidate: %s", exc)

    def _start_telemetry(self, session: NegotiationSession) -> None:
        if self._sampler is not None:
            return

        def _forward(sample: MetricSample) -> None:
            self._post(_SampleTaken(session, sample))

        def _frames() -> FrameCount | None:
            counter = session.video_frames
            return counter.snapshot() if counter is not None else None

        sampler = self._sampler_factory(
            session.peer.getStats,
            interval=self._telemetry_interval,
            on_sample=_forward,
            frame_source=_frames,
        )
        self._sampler = sampler
        sampler.start()

    def _cancel_answer_timer(self) -> None:
        if self._answer_timer is not None:
            self._answer_timer.cancel()
            self._answer_timer = None

    async def _teardown(
        self, state: NegotiationState | None = None, status: str | None = None
    ) -> bool:
        """Release the active session. Returns ``False`` when there was none.

        When the dispatcher is already tearing the session down, the caller
        waits for that release to finish instead of returning early. *state*
        is applied before any waiter resumes, so a later ``connect`` or
        ``disconnect`` always has the final word.
        """

        session = self._session
        if session is None:
            await self._wait_for_release()
            if state is not None:
                self._set_state(state, status)
            return False
        self._session = None
        session.closed = True
        released = asyncio.get_running_loop().create_future()
        self._released = released
        try:
            await self._release(session)
        finally:
            if state is not None:
                self._set_state(state, status)
            released.set_result(None)
            if self._released is released:
                self._released = None
        return True

    async def _wait_for_release(self) -> None:
        released = self._released
        if released is not None and not released.done():
            await asyncio.shield(released)

    async def _release(self, session: NegotiationSession) -> None:
        sampler = self._sampler
        self._sampler = None
        if sampler is not None:
            await sampler.stop()

        self._cancel_answer_timer()
        dispatcher = self._dispatcher
        self._dispatcher = None
        self._queue = None
        if dispatcher is not None and dispatcher is not asyncio.current_task():
            dispatcher.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await dispatcher

        pending = self._pending_offer
        if pending is not None and not pending.done():
            pending.set_exception(ChannelClosed("Session closed before the offer was sent"))

        channel = session.channel
        channel.on_message(None)
        channel.on_error(None)
        channel.on_close(None)
        try:
            await session.peer.close()
        except Exception:  # pragma: no cover - best effort cleanup
            logger.debug("Error while closing peer connection", exc_info=True)
        try:
            await channel.close()
        except Exception:  # pragma: no cover - best effort cleanup
            logger.debug("Error while closing signaling channel", exc_info=True)
        session.candidates.clear()

    def _set_state(self, state: NegotiationState, status: str | None = None) -> None:
        self._status = status or _STATUS_TEXT[state]
        if state is self._state:
            return
        logger.info("Negotiation state %s -> %s", self._state.value, state.value)
        self._state = state
        self._notify(self._state_observers, state)

    @staticmethod
    def _notify(observers: list[Callable[[Any], None]], value: Any) -> None:
        for callback in list(observers):
            try:
                callback(value)
            except Exception:
                logger.exception("Negotiation observer failed")


_missing = set(MESSAGE_CLASSES) - set(SessionNegotiator._MESSAGE_HANDLERS)
if _missing:  # pragma: no cover - guards against adding a variant without a handler
    raise TypeError(
        "SessionNegotiator lacks handlers for: "
        + ", ".join(sorted(cls.__name__ for cls in _missing))
    )
del _missing


__all__ = [
    "ConnectionState",
    "NegotiationSession",
    "NegotiationState",
    "SessionNegotiator",
]
