"""Duplex signaling channel carrying JSON-encoded signaling messages."""
from __future__ import annotations

import abc
import asyncio
import contextlib
import logging
from typing import Callable

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from .errors import ChannelClosed, MalformedMessage
from .signaling import SignalingMessage, decode_message, encode_message

MessageHandler = Callable[[SignalingMessage], None]
CloseHandler = Callable[[], None]
ErrorHandler = Callable[[BaseException], None]

logger = logging.getLogger(__name__)


class SignalingChannel(abc.ABC):
    """Message-oriented transport with one active handler per event kind.

    Inbound frames are decoded here; handlers only ever see typed messages.
    A frame that fails to decode is reported to the error handler as
    :class:`MalformedMessage` and the channel keeps reading.
    """

    def __init__(self) -> None:
        self._message_handler: MessageHandler | None = None
        self._close_handler: CloseHandler | None = None
        self._error_handler: ErrorHandler | None = None
        self._close_notified = False

    def on_message(self, handler: MessageHandler | None) -> None:
        self._message_handler = handler

    def on_close(self, handler: CloseHandler | None) -> None:
        self._close_handler = handler

    def on_error(self, handler: ErrorHandler | None) -> None:
        self._error_handler = handler

    @property
    @abc.abstractmethod
    def is_open(self) -> bool:
        """Return ``True`` while frames can be sent."""

    async def send(self, message: SignalingMessage) -> None:
        if not self.is_open:
            raise ChannelClosed("Signaling channel is not open")
        await self._send_frame(encode_message(message))

    @abc.abstractmethod
    async def _send_frame(self, frame: str) -> None:
        """Transmit an encoded frame."""

    @abc.abstractmethod
    async def close(self) -> None:
        """Close the transport. Calling it more than once is harmless."""

    # ------------------------------------------------------------------
    def _receive_frame(self, raw: str | bytes) -> None:
        try:
            message = decode_message(raw)
        except MalformedMessage as exc:
            self._dispatch_error(exc)
            return
        self._dispatch_message(message)

    def _dispatch_message(self, message: SignalingMessage) -> None:
        handler = self._message_handler
        if handler is None:
            logger.debug("Dropping %s message without a handler", type(message).__name__)
            return
        try:
            handler(message)
        except Exception:  # pragma: no cover - handler failures are logged only
            logger.exception("Signaling message handler failed")

    def _dispatch_error(self, error: BaseException) -> None:
        handler = self._error_handler
        if handler is None:
            logger.warning("Signaling channel error: %s", error)
            return
        try:
            handler(error)
        except Exception:  # pragma: no cover - handler failures are logged only
            logger.exception("Signaling error handler failed")

    def _dispatch_close(self) -> None:
        if self._close_notified:
            return
        self._close_notified = True
        handler = self._close_handler
        if handler is None:
            return
        try:
            handler()
        except Exception:  # pragma: no cover - handler failures are logged only
            logger.exception("Signaling close handler failed")


class WebSocketChannel(SignalingChannel):
    """Signaling channel backed by a ``websockets`` client connection."""

    def __init__(self, connection) -> None:
        super().__init__()
        self._connection = connection
        self._reader: asyncio.Task[None] | None = None
        self._closed = False

    @classmethod
    async def connect(cls, url: str, *, open_timeout: float | None = 10.0) -> "WebSocketChannel":
        """Open a connection to *url* and start reading frames."""

        try:
            connection = await websockets.connect(url, open_timeout=open_timeout)
        except (OSError, asyncio.TimeoutError, WebSocketException) as exc:
            raise ChannelClosed(f"Unable to reach signaling server at {url}: {exc}") from exc
        channel = cls(connection)
        channel.start()
        logger.info("Signaling channel connected to %s", url)
        return channel

    def start(self) -> None:
        if self._reader is None:
            self._reader = asyncio.create_task(self._read_loop())

    @property
    def is_open(self) -> bool:
        return not self._closed and not self._close_notified

    async def _send_frame(self, frame: str) -> None:
        try:
            await self._connection.send(frame)
        except ConnectionClosed as exc:
            raise ChannelClosed("Signaling channel closed while sending") from exc

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        reader = self._reader
        self._reader = None
        current = asyncio.current_task()
        if reader is not None and reader is not current:
            reader.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await reader
        try:
            await self._connection.close()
        except (OSError, WebSocketException) as exc:  # pragma: no cover - best effort
            logger.debug("Error while closing signaling connection: %s", exc)

    async def _read_loop(self) -> None:
        try:
            async for raw in self._connection:
                self._receive_frame(raw)
        except ConnectionClosed as exc:
            logger.info("Signaling connection closed: %s", exc)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("Signaling reader failed: %s", exc)
            self._dispatch_error(exc)
        if not self._closed:
            self._dispatch_close()


__all__ = [
    "CloseHandler",
    "ErrorHandler",
    "MessageHandler",
    "SignalingChannel",
    "WebSocketChannel",
]
