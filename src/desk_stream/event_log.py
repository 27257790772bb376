"""Structured, operator-facing event log for viewer and producer sessions."""

from __future__ import annotations

import json
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Deque, Iterable

SEVERITIES: tuple[str, ...] = ("debug", "info", "success", "warning", "error")

_LOGGING_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "success": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class EventLogEntry:
    """Represents a single event surfaced to presentation layers."""

    timestamp: float
    severity: str
    category: str
    event: str
    message: str
    metadata: dict[str, object | None] | None = None

    def to_dict(self) -> dict[str, object | None]:
        payload: dict[str, object | None] = {
            "time": self.timestamp,
            "severity": self.severity,
            "message": self.message,
            "category": self.category,
            "event": self.event,
        }
        if self.metadata:
            payload["metadata"] = self.metadata
        return payload


class EventLog:
    """Bounded append-only log, optionally mirrored to a JSONL file."""

    def __init__(
        self,
        path: Path | str | None = None,
        *,
        max_entries: int = 500,
        mirror_to_logging: bool = True,
    ) -> None:
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self._path: Path | None = Path(path) if path is not None else None
        self._entries: Deque[EventLogEntry] = deque(maxlen=max_entries)
        self._lock = threading.Lock()
        self._mirror = mirror_to_logging
        if self._path is not None:
            try:
                self._path.parent.mkdir(parents=True, exist_ok=True)
            except OSError as exc:  # pragma: no cover - filesystem errors are rare
                logger.warning("Unable to prepare event log directory: %s", exc)
                self._path = None
        self._load_entries()

    @property
    def path(self) -> Path | None:
        return self._path

    def record(
        self,
        severity: str,
        event: str,
        message: str,
        *,
        category: str = "session",
        metadata: dict[str, object | None] | None = None,
    ) -> EventLogEntry:
        """Append a new event and return the stored entry."""

        level = severity.strip().lower() if isinstance(severity, str) else ""
        if level not in SEVERITIES:
            level = "info"
        cleaned_category = category.strip() if isinstance(category, str) else ""
        entry = EventLogEntry(
            timestamp=time.time(),
            severity=level,
            category=cleaned_category or "general",
            event=event,
            message=message,
            metadata=self._clean_metadata(metadata),
        )
        with self._lock:
            self._entries.append(entry)
            self._append_persistent(entry)
        if self._mirror:
            logger.log(_LOGGING_LEVELS[level], "[%s] %s", entry.category, message)
        return entry

    def tail(
        self,
        limit: int | None = None,
        *,
        severity: str | None = None,
        event: str | None = None,
    ) -> list[EventLogEntry]:
        """Return the most recent entries, optionally filtered."""

        with self._lock:
            entries: Iterable[EventLogEntry] = list(self._entries)
        if severity:
            wanted = severity.strip().lower()
            entries = [entry for entry in entries if entry.severity == wanted]
        if event:
            entries = [entry for entry in entries if entry.event == event]
        entries = list(entries)
        if limit is not None:
            try:
                limit_value = max(1, int(limit))
            except (TypeError, ValueError):
                limit_value = 1
            if len(entries) > limit_value:
                entries = entries[-limit_value:]
        return entries

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    # ----------------------------- implementation --------------------------
    def _load_entries(self) -> None:
        if self._path is None or not self._path.exists():
            return
        try:
            with self._path.open("r", encoding="utf-8") as handle:
                lines = handle.readlines()
        except OSError as exc:  # pragma: no cover - best effort logging
            logger.warning("Unable to load event log: %s", exc)
            return
        for raw_line in lines:
            line = raw_line.strip()
            if not line:
                continue
            try:
                payload = json.loads(line)
            except ValueError:
                continue
            entry = self._deserialize(payload)
            if entry is not None:
                self._entries.append(entry)

    @staticmethod
    def _deserialize(payload: object) -> EventLogEntry | None:
        if not isinstance(payload, dict):
            return None
        event = payload.get("event")
        message = payload.get("message")
        if not isinstance(event, str) or not isinstance(message, str):
            return None
        severity = payload.get("severity")
        if severity not in SEVERITIES:
            severity = "info"
        category = payload.get("category")
        try:
            timestamp = float(payload.get("time", time.time()))
        except (TypeError, ValueError):
            timestamp = time.time()
        metadata = payload.get("metadata")
        return EventLogEntry(
            timestamp=timestamp,
            severity=severity,
            category=category if isinstance(category, str) and category else "general",
            event=event,
            message=message,
            metadata=metadata if isinstance(metadata, dict) else None,
        )

    def _append_persistent(self, entry: EventLogEntry) -> None:
        if self._path is None:
            return
        try:
            with self._path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(entry.to_dict(), separators=(",", ":")) + "\n")
        except OSError as exc:  # pragma: no cover - best effort logging
            logger.warning("Unable to persist event log: %s", exc)

    @staticmethod
    def _clean_metadata(
        metadata: dict[str, object | None] | None,
    ) -> dict[str, object | None] | None:
        if not metadata:
            return None
        cleaned = {key: value for key, value in metadata.items() if value is not None}
        return cleaned or None


__all__ = ["EventLog", "EventLogEntry", "SEVERITIES"]
