import json
import logging
from pathlib import Path

import pytest

from desk_stream.event_log import EventLog


def test_record_and_tail_in_order():
    log = EventLog(mirror_to_logging=False)
    log.record("info", "connect", "Starting")
    log.record("warning", "discard", "Bad frame", category="signaling")
    log.record("error", "server-error", "Boom")

    entries = log.tail()
    assert [entry.event for entry in entries] == ["connect", "discard", "server-error"]
    assert entries[1].category == "signaling"
    assert [entry.event for entry in log.tail(2)] == ["discard", "server-error"]
    assert [entry.event for entry in log.tail(severity="ERROR")] == ["server-error"]
    assert [entry.event for entry in log.tail(event="connect")] == ["connect"]


def test_unknown_severity_is_downgraded_to_info():
    log = EventLog(mirror_to_logging=False)
    entry = log.record("loud", "x", "message", category=" ")
    assert entry.severity == "info"
    assert entry.category == "general"


def test_entries_are_bounded():
    log = EventLog(max_entries=3, mirror_to_logging=False)
    for index in range(5):
        log.record("info", f"e{index}", "m")
    assert len(log) == 3
    assert log.tail()[0].event == "e2"


def test_to_dict_drops_empty_metadata():
    log = EventLog(mirror_to_logging=False)
    plain = log.record("info", "a", "m", metadata={"ignored": None}).to_dict()
    assert "metadata" not in plain
    assert set(plain) == {"time", "severity", "message", "category", "event"}
    rich = log.record("info", "b", "m", metadata={"peer": "1", "empty": None}).to_dict()
    assert rich["metadata"] == {"peer": "1"}


def test_entries_persist_to_jsonl(tmp_path: Path):
    path = tmp_path / "logs" / "events.jsonl"
    log = EventLog(path, mirror_to_logging=False)
    log.record("success", "connected", "Streaming active")
    log.record("error", "server-error", "Boom")

    lines = path.read_text(encoding="utf-8").splitlines()
    assert json.loads(lines[0])["event"] == "connected"

    with path.open("a", encoding="utf-8") as handle:
        handle.write("not json\n")
    reloaded = EventLog(path, mirror_to_logging=False)
    assert [entry.event for entry in reloaded.tail()] == ["connected", "server-error"]
    assert reloaded.tail()[0].severity == "success"


def test_records_are_mirrored_to_logging(caplog: pytest.LogCaptureFixture):
    log = EventLog()
    with caplog.at_level(logging.WARNING, logger="desk_stream.event_log"):
        log.record("warning", "discard", "Dropped frame", category="signaling")
    assert "[signaling] Dropped frame" in caplog.text


def test_clear_empties_the_log():
    log = EventLog(mirror_to_logging=False)
    log.record("info", "a", "m")
    log.clear()
    assert len(log) == 0


def test_max_entries_must_be_positive():
    with pytest.raises(ValueError):
        EventLog(max_entries=0)
