"""Host resource metrics used alongside transport statistics."""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

MEMINFO_PATH = Path("/proc/meminfo")


@dataclass(frozen=True, slots=True)
class SystemMetrics:
    """CPU and memory utilisation of the viewer host, in percent."""

    cpu_percent: float = 0.0
    memory_percent: float = 0.0

    def to_dict(self) -> dict[str, float]:
        return {"cpu_percent": self.cpu_percent, "memory_percent": self.memory_percent}


def _clamp_percentage(value: float) -> float:
    """Clamp *value* to the 0–100 range."""

    return max(0.0, min(100.0, value))


def cpu_usage_percent() -> float | None:
    """Return the one-minute load average normalised by the CPU count."""

    cpu_count = os.cpu_count()
    if not isinstance(cpu_count, int) or cpu_count <= 0:
        return None
    try:
        load_1m, _load_5m, _load_15m = os.getloadavg()
    except (AttributeError, OSError):  # pragma: no cover - depends on OS support
        return None
    return _clamp_percentage((load_1m / cpu_count) * 100.0)


def memory_usage_percent(meminfo_path: Path | str = MEMINFO_PATH) -> float | None:
    """Return the share of physical memory in use according to ``/proc/meminfo``."""

    try:
        with open(meminfo_path, "r", encoding="utf-8") as handle:
            lines = handle.readlines()
    except OSError:  # pragma: no cover - non-Linux platforms
        return None

    total_kib = available_kib = None
    for line in lines:
        parts = line.split()
        if len(parts) < 2:
            continue
        try:
            value = int(parts[1])
        except ValueError:
            continue
        if parts[0] == "MemTotal:":
            total_kib = value
        elif parts[0] == "MemAvailable:":
            available_kib = value
        if total_kib is not None and available_kib is not None:
            break

    if not total_kib or total_kib <= 0 or available_kib is None:
        return None
    used_kib = max(0, total_kib - max(0, available_kib))
    return _clamp_percentage((used_kib / total_kib) * 100.0)


def collect_system_metrics() -> SystemMetrics:
    """Return current host utilisation; unavailable readings report as 0."""

    cpu = cpu_usage_percent()
    memory = memory_usage_percent()
    if cpu is None or memory is None:
        logger.debug("Host metrics partially unavailable (cpu=%s, memory=%s)", cpu, memory)
    return SystemMetrics(
        cpu_percent=cpu if cpu is not None else 0.0,
        memory_percent=memory if memory is not None else 0.0,
    )


__all__ = [
    "SystemMetrics",
    "collect_system_metrics",
    "cpu_usage_percent",
    "memory_usage_percent",
]
