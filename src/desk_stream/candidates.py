"""Network-reachability candidates and the outbound candidate queue."""
from __future__ import annotations

import json
import logging
from collections import deque
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Deque

from .errors import MalformedMessage

if TYPE_CHECKING:  # pragma: no cover - imported for type checkers only
    from aiortc import RTCIceCandidate

try:  # pragma: no cover - optional dependency
    from aiortc.sdp import candidate_from_sdp as _candidate_from_sdp
    from aiortc.sdp import candidate_to_sdp as _candidate_to_sdp
except ImportError as exc:  # pragma: no cover - handled at runtime
    _candidate_from_sdp = None  # type: ignore[assignment]
    _candidate_to_sdp = None  # type: ignore[assignment]
    _AIORTC_IMPORT_ERROR: ImportError | None = exc
else:  # pragma: no cover - executed when dependency is installed
    _AIORTC_IMPORT_ERROR = None


logger = logging.getLogger(__name__)

_PREFIX = "candidate:"


def _ensure_aiortc_available() -> None:
    if _AIORTC_IMPORT_ERROR is not None:
        raise RuntimeError(
            "aiortc is required to translate ICE candidates. Install the 'aiortc' package."
        ) from _AIORTC_IMPORT_ERROR


@dataclass(frozen=True, slots=True)
class Candidate:
    """A single ICE candidate in browser ``RTCIceCandidateInit`` form."""

    candidate: str
    sdp_mid: str | None = None
    sdp_mline_index: int | None = None

    @property
    def is_end_of_candidates(self) -> bool:
        return not self.candidate.strip()

    def to_dict(self) -> dict[str, Any]:
        return {
            "candidate": self.candidate,
            "sdpMid": self.sdp_mid,
            "sdpMLineIndex": self.sdp_mline_index,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_json(cls, raw: str) -> "Candidate":
        """Parse the serialized candidate carried by ``ice-candidate`` messages."""

        try:
            payload = json.loads(raw)
        except (TypeError, ValueError) as exc:
            raise MalformedMessage(f"Invalid ICE candidate payload: {exc}", raw=raw) from exc
        if not isinstance(payload, dict):
            raise MalformedMessage("ICE candidate payload must be a JSON object", raw=raw)
        candidate = payload.get("candidate")
        if not isinstance(candidate, str):
            raise MalformedMessage("ICE candidate payload requires a 'candidate' string", raw=raw)
        sdp_mid = payload.get("sdpMid")
        index = payload.get("sdpMLineIndex")
        if index is not None and (isinstance(index, bool) or not isinstance(index, int)):
            raise MalformedMessage("sdpMLineIndex must be an integer", raw=raw)
        return cls(
            candidate=candidate,
            sdp_mid=str(sdp_mid) if sdp_mid is not None else None,
            sdp_mline_index=index,
        )

    def to_rtc(self) -> "RTCIceCandidate":
        """Return the aiortc representation of this candidate."""

        _ensure_aiortc_available()
        line = self.candidate.strip()
        if line.startswith(_PREFIX):
            line = line[len(_PREFIX):]
        try:
            rtc = _candidate_from_sdp(line)
        except (AssertionError, IndexError, ValueError) as exc:
            raise MalformedMessage(f"Unparseable ICE candidate: {self.candidate!r}") from exc
        rtc.sdpMid = self.sdp_mid
        rtc.sdpMLineIndex = self.sdp_mline_index
        return rtc

    @classmethod
    def from_rtc(cls, rtc: "RTCIceCandidate") -> "Candidate":
        _ensure_aiortc_available()
        return cls(
            candidate=_PREFIX + _candidate_to_sdp(rtc),
            sdp_mid=rtc.sdpMid,
            sdp_mline_index=rtc.sdpMLineIndex,
        )


class CandidateQueue:
    """FIFO buffer of local candidates awaiting the remote description."""

    def __init__(self) -> None:
        self._items: Deque[Candidate] = deque()

    def push(self, candidate: Candidate) -> None:
        self._items.append(candidate)

    def drain(self) -> list[Candidate]:
        """Remove and return every queued candidate in insertion order."""

        items = list(self._items)
        self._items.clear()
        return items

    def clear(self) -> None:
        if self._items:
            logger.debug("Discarding %d queued candidates", len(self._items))
        self._items.clear()

    def __len__(self) -> int:
        return len(self._items)

    def __bool__(self) -> bool:
        return bool(self._items)


__all__ = ["Candidate", "CandidateQueue"]
