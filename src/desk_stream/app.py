"""FastAPI application serving the producer signaling endpoint."""
from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Any, Callable, Iterable, Sequence

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel, Field

from .event_log import SEVERITIES, EventLog
from .signaling import AudioDeviceInfo, SourceInfo
from .signaling_server import DEFAULT_AUDIO_DEVICES, DEFAULT_SOURCES, SignalingServer
from .version import APP_VERSION

DEFAULT_PORT = 3000


class ClientErrorReportPayload(BaseModel):
    """Client-side failure report."""

    name: str | None = Field(default=None, max_length=128)
    message: str | None = Field(default=None, max_length=1024)
    stack: str | None = Field(default=None, max_length=4096)


def create_app(
    log_path: Path | str | None = None,
    *,
    sources: Iterable[SourceInfo] = DEFAULT_SOURCES,
    audio_devices: Iterable[AudioDeviceInfo] = DEFAULT_AUDIO_DEVICES,
    event_log: EventLog | None = None,
    peer_factory: Callable[[], Any] | None = None,
) -> FastAPI:
    app = FastAPI(title="desk_stream", version=APP_VERSION)

    logger = logging.getLogger(__name__)

    shared_event_log = event_log if event_log is not None else EventLog(log_path)
    server_kwargs: dict[str, Any] = {
        "sources": sources,
        "audio_devices": audio_devices,
        "event_log": shared_event_log,
    }
    if peer_factory is not None:
        server_kwargs["peer_factory"] = peer_factory
    server = SignalingServer(**server_kwargs)
    app.state.signaling_server = server
    app.state.event_log = shared_event_log

    @app.on_event("startup")
    async def startup() -> None:  # pragma: no cover - framework hook
        shared_event_log.record("info", "startup", "Producer starting up.", category="system")

    @app.on_event("shutdown")
    async def shutdown() -> None:  # pragma: no cover - framework hook
        await server.close()
        shared_event_log.record("info", "shutdown", "Producer shut down.", category="system")

    @app.websocket("/ws")
    async def signaling_socket(websocket: WebSocket) -> None:
        await server.handle_connection(websocket, disconnect_errors=(WebSocketDisconnect,))

    @app.get("/api/sources")
    async def list_sources() -> dict[str, object]:
        return {
            "monitors": [source.to_dict() for source in server.sources],
            "audio_devices": [device.to_dict() for device in server.audio_devices],
        }

    @app.get("/api/logs")
    async def get_event_log_entries(
        limit: int = 100, severity: str | None = None
    ) -> dict[str, object]:
        if severity is not None and severity.strip().lower() not in SEVERITIES:
            raise HTTPException(status_code=400, detail=f"Unknown severity: {severity}")
        try:
            entries = await run_in_threadpool(shared_event_log.tail, limit, severity=severity)
        except Exception as exc:  # pragma: no cover - defensive logging
            logger.warning("Unable to load event log: %s", exc)
            raise HTTPException(status_code=503, detail="Unable to load event log") from exc
        ordered = list(reversed(entries))
        return {"entries": [entry.to_dict() for entry in ordered]}

    @app.post("/api/log/client-error")
    async def log_client_error(payload: ClientErrorReportPayload) -> dict[str, str]:
        summary_parts = []
        if payload.name:
            summary_parts.append(payload.name)
        if payload.message:
            summary_parts.append(payload.message)
        summary = ": ".join(summary_parts) if summary_parts else "Unspecified client error"
        shared_event_log.record(
            "error",
            "client-error",
            f"Client reported error: {summary}",
            category="client",
        )
        if payload.stack:
            logger.debug("Client error stack trace:\n%s", payload.stack)
        return {"status": "logged"}

    return app


def build_parser() -> argparse.ArgumentParser:
    """Return the argument parser for the producer server."""

    parser = argparse.ArgumentParser(
        prog="python -m desk_stream.app",
        description="Serve the desk_stream signaling endpoint",
    )
    parser.add_argument("--host", default="0.0.0.0", help="Interface to bind.")
    parser.add_argument("--port", type=int, default=DEFAULT_PORT, help="Port to listen on.")
    parser.add_argument("--log-file", type=Path, help="Persist the event log as JSON lines.")
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point used by `python -m desk_stream.app`."""

    import uvicorn

    args = build_parser().parse_args(argv)
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    uvicorn.run(create_app(args.log_file), host=args.host, port=args.port)
    return 0


__all__ = ["ClientErrorReportPayload", "build_parser", "create_app", "main"]


if __name__ == "__main__":  # pragma: no cover - module behaviour
    sys.exit(main())
