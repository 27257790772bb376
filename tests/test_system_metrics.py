from pathlib import Path

import pytest

from desk_stream import system_metrics
from desk_stream.system_metrics import (
    SystemMetrics,
    collect_system_metrics,
    cpu_usage_percent,
    memory_usage_percent,
)


def _write_meminfo(path: Path, total: int, available: int) -> Path:
    path.write_text(
        f"MemTotal:       {total} kB\n"
        "MemFree:         1000 kB\n"
        f"MemAvailable:   {available} kB\n"
        "Buffers:          200 kB\n",
        encoding="utf-8",
    )
    return path


def test_memory_usage_reads_meminfo(tmp_path: Path):
    meminfo = _write_meminfo(tmp_path / "meminfo", total=8_000_000, available=2_000_000)
    assert memory_usage_percent(meminfo) == pytest.approx(75.0)


def test_memory_usage_requires_available_field(tmp_path: Path):
    meminfo = tmp_path / "meminfo"
    meminfo.write_text("MemTotal: 100 kB\n", encoding="utf-8")
    assert memory_usage_percent(meminfo) is None


def test_cpu_usage_is_normalised_by_core_count(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setattr(system_metrics.os, "cpu_count", lambda: 4)
    monkeypatch.setattr(system_metrics.os, "getloadavg", lambda: (2.0, 1.0, 0.5))
    assert cpu_usage_percent() == pytest.approx(50.0)

    monkeypatch.setattr(system_metrics.os, "getloadavg", lambda: (12.0, 1.0, 0.5))
    assert cpu_usage_percent() == 100.0


def test_cpu_usage_unknown_without_core_count(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setattr(system_metrics.os, "cpu_count", lambda: None)
    assert cpu_usage_percent() is None


def test_collect_reports_zero_for_missing_readings(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setattr(system_metrics, "cpu_usage_percent", lambda: None)
    monkeypatch.setattr(system_metrics, "memory_usage_percent", lambda: 33.0)
    assert collect_system_metrics() == SystemMetrics(cpu_percent=0.0, memory_percent=33.0)
