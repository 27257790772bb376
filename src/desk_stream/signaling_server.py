"""Producer side of the signaling exchange."""
from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Callable, Iterable, Protocol

from .candidates import Candidate
from .errors import MalformedMessage
from .event_log import EventLog
from .media import create_audio_track, create_video_track
from .signaling import (
    Answer,
    AudioDeviceInfo,
    AudioDeviceList,
    ErrorMessage,
    IceCandidateMessage,
    Offer,
    SignalingMessage,
    SourceInfo,
    SourceList,
    decode_message,
    encode_message,
)

if TYPE_CHECKING:  # pragma: no cover - imported for type checkers only
    from aiortc import RTCPeerConnection

try:  # pragma: no cover - optional dependency
    from aiortc import RTCPeerConnection as _RTCPeerConnection
    from aiortc import RTCSessionDescription as _RTCSessionDescription
except ImportError as exc:  # pragma: no cover - handled at runtime
    _RTCPeerConnection = None  # type: ignore[assignment]
    _RTCSessionDescription = None  # type: ignore[assignment]
    _AIORTC_IMPORT_ERROR: ImportError | None = exc
else:  # pragma: no cover - executed when dependency is installed
    _AIORTC_IMPORT_ERROR = None


logger = logging.getLogger(__name__)

DEFAULT_SOURCES: tuple[SourceInfo, ...] = (
    SourceInfo(id="test", name="Test pattern", source_type="test", resolution="1920x1080", primary=True),
)
DEFAULT_AUDIO_DEVICES: tuple[AudioDeviceInfo, ...] = (
    AudioDeviceInfo(name="silence", description="Silent audio track", device_type="system"),
)


class TextSocket(Protocol):
    """The subset of :class:`fastapi.WebSocket` used by the server."""

    async def accept(self) -> None: ...

    async def send_text(self, data: str) -> None: ...

    async def receive_text(self) -> str: ...


def _default_peer_factory() -> "RTCPeerConnection":
    if _AIORTC_IMPORT_ERROR is not None:
        raise RuntimeError(
            "aiortc is required to answer offers. Install the 'aiortc' package to enable streaming."
        ) from _AIORTC_IMPORT_ERROR
    return _RTCPeerConnection()


class _ProducerPeer:
    """Peer connection and tracks owned by one websocket client."""

    def __init__(self, pc: Any, tracks: list[Any]) -> None:
        self.pc = pc
        self.tracks = tracks

    async def close(self) -> None:
        for track in self.tracks:
            try:
                track.stop()
            except Exception:  # pragma: no cover - best effort cleanup
                logger.debug("Error while stopping track", exc_info=True)
        try:
            await self.pc.close()
        except Exception:  # pragma: no cover - best effort cleanup
            logger.debug("Error while closing peer connection", exc_info=True)


class SignalingServer:
    """Answer viewer offers with test-pattern media.

    Each websocket gets the source and audio-device lists on accept. An
    ``offer`` replaces whatever peer the socket had before; a frame that
    cannot be decoded is answered with an ``error`` message and the socket
    stays open. The peer is closed when the socket goes away.
    """

    def __init__(
        self,
        *,
        sources: Iterable[SourceInfo] = DEFAULT_SOURCES,
        audio_devices: Iterable[AudioDeviceInfo] = DEFAULT_AUDIO_DEVICES,
        event_log: EventLog | None = None,
        peer_factory: Callable[[], Any] = _default_peer_factory,
    ) -> None:
        self.sources = tuple(sources)
        self.audio_devices = tuple(audio_devices)
        self._event_log = event_log if event_log is not None else EventLog()
        self._peer_factory = peer_factory
        self._peers: dict[int, _ProducerPeer] = {}
        self._next_id = 0

    @property
    def active_peers(self) -> int:
        return len(self._peers)

    async def handle_connection(
        self, websocket: TextSocket, *, disconnect_errors: tuple[type[BaseException], ...] = ()
    ) -> None:
        """Serve *websocket* until it disconnects.

        ``disconnect_errors`` lists the exception types the transport raises
        when the client goes away.
        """

        self._next_id += 1
        client_id = self._next_id
        await websocket.accept()
        self._event_log.record(
            "info", "client-connected", f"Viewer {client_id} connected", category="producer"
        )
        try:
            await self._send(websocket, SourceList(sources=self.sources))
            await self._send(websocket, AudioDeviceList(devices=self.audio_devices))
            while True:
                raw = await websocket.receive_text()
                try:
                    message = decode_message(raw)
                except MalformedMessage as exc:
                    logger.error("Viewer %d sent an undecodable frame: %s", client_id, exc)
                    await self._send(websocket, ErrorMessage(f"Unable to decode message: {exc}"))
                    continue
                await self._dispatch(client_id, websocket, message)
        except disconnect_errors:
            logger.info("Viewer %d disconnected", client_id)
        finally:
            peer = self._peers.pop(client_id, None)
            if peer is not None:
                await peer.close()
            self._event_log.record(
                "info",
                "client-disconnected",
                f"Cleaned up resources for viewer {client_id}",
                category="producer",
            )

    async def close(self) -> None:
        peers = list(self._peers.values())
        self._peers.clear()
        for peer in peers:
            await peer.close()

    async def _dispatch(self, client_id: int, websocket: TextSocket, message: SignalingMessage) -> None:
        if isinstance(message, Offer):
            await self._handle_offer(client_id, websocket, message)
        elif isinstance(message, IceCandidateMessage):
            await self._handle_candidate(client_id, message)
        else:
            logger.debug("Ignoring %s from viewer %d", type(message).__name__, client_id)

    async def _handle_offer(self, client_id: int, websocket: TextSocket, offer: Offer) -> None:
        config = offer.config
        logger.info("Viewer %d offer with config %s", client_id, config.to_dict())
        existing = self._peers.pop(client_id, None)
        if existing is not None:
            await existing.close()

        try:
            pc = self._peer_factory()
        except Exception as exc:
            await self._send(websocket, ErrorMessage(f"Unable to create connection: {exc}"))
            return
        tracks: list[Any] = []
        peer = _ProducerPeer(pc, tracks)
        try:
            video = create_video_track(config)
            tracks.append(video)
            pc.addTrack(video)
            audio = create_audio_track(config)
            if audio is not None:
                tracks.append(audio)
                pc.addTrack(audio)
            await pc.setRemoteDescription(_RTCSessionDescription(sdp=offer.sdp, type="offer"))
            answer = await pc.createAnswer()
            await pc.setLocalDescription(answer)
        except Exception as exc:
            logger.error("Viewer %d: failed to create peer connection: %s", client_id, exc)
            await peer.close()
            await self._send(websocket, ErrorMessage(f"Unable to create connection: {exc}"))
            return

        self._peers[client_id] = peer
        local = pc.localDescription or answer
        await self._send(websocket, Answer(sdp=local.sdp))
        self._event_log.record(
            "success",
            "answer-sent",
            f"Answered viewer {client_id} with {config.resolution.key()}@{config.framerate}",
            category="producer",
        )

    async def _handle_candidate(self, client_id: int, message: IceCandidateMessage) -> None:
        peer = self._peers.get(client_id)
        if peer is None:
            logger.warning("ICE candidate for viewer %d without a peer connection", client_id)
            return
        try:
            candidate = Candidate.from_json(message.candidate)
            if candidate.is_end_of_candidates:
                return
            await peer.pc.addIceCandidate(candidate.to_rtc())
        except MalformedMessage as exc:
            logger.error("Viewer %d sent an undecodable ICE candidate: %s", client_id, exc)
        except Exception as exc:
            logger.error("Viewer %d: failed to add ICE candidate: %s", client_id, exc)

    @staticmethod
    async def _send(websocket: TextSocket, message: SignalingMessage) -> None:
        await websocket.send_text(encode_message(message))


__all__ = [
    "DEFAULT_AUDIO_DEVICES",
    "DEFAULT_SOURCES",
    "SignalingServer",
    "TextSocket",
]
