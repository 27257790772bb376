"""Threshold classification, scoring and suggestions for telemetry samples."""
from __future__ import annotations

import itertools
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Deque, Mapping

from .telemetry import MetricSample

logger = logging.getLogger(__name__)

HISTORY_CAPACITY = 60

HISTORY_METRICS: tuple[str, ...] = (
    "fps",
    "bitrate_kbps",
    "rtt_ms",
    "jitter",
    "frames_dropped",
    "cpu_percent",
    "memory_percent",
)


@dataclass(frozen=True, slots=True)
class Threshold:
    """Warning/critical bounds for one metric."""

    warning: float
    critical: float
    lower_is_worse: bool = False

    def classify(self, value: float) -> str | None:
        """Return ``"critical"``, ``"warning"`` or ``None`` for *value*."""

        if self.lower_is_worse:
            if value < self.critical:
                return "critical"
            if value < self.warning:
                return "warning"
            return None
        if value > self.critical:
            return "critical"
        if value > self.warning:
            return "warning"
        return None


@dataclass(frozen=True, slots=True)
class _MonitoredMetric:
    name: str
    attribute: str
    threshold: Threshold
    label: str
    unit: str
    warning_suggestion: str
    critical_suggestion: str


THRESHOLDS: Mapping[str, Threshold] = {
    "fps": Threshold(warning=25, critical=15, lower_is_worse=True),
    "latency": Threshold(warning=100, critical=200),
    "cpu": Threshold(warning=70, critical=90),
    "memory": Threshold(warning=80, critical=95),
    "dropped_frames": Threshold(warning=5, critical=10),
}

_MONITORED: tuple[_MonitoredMetric, ...] = (
    _MonitoredMetric(
        "fps", "fps", THRESHOLDS["fps"], "Frame rate", " fps",
        "Consider lowering the resolution or frame rate",
        "Reduce video quality or close other applications",
    ),
    _MonitoredMetric(
        "latency", "rtt_ms", THRESHOLDS["latency"], "Latency", " ms",
        "Consider using a wired connection",
        "Check your network connection",
    ),
    _MonitoredMetric(
        "cpu", "cpu_percent", THRESHOLDS["cpu"], "CPU usage", "%",
        "Close background processes",
        "Reduce encoding settings or stop other workloads",
    ),
    _MonitoredMetric(
        "memory", "memory_percent", THRESHOLDS["memory"], "Memory usage", "%",
        "Keep an eye on memory usage",
        "Close other applications",
    ),
    _MonitoredMetric(
        "dropped_frames", "frames_dropped", THRESHOLDS["dropped_frames"], "Dropped frames", "",
        "Lower the frame rate to give the decoder headroom",
        "Lower the resolution or frame rate",
    ),
)


@dataclass(frozen=True, slots=True)
class Issue:
    severity: str
    metric: str
    message: str
    suggestion: str

    def to_dict(self) -> dict[str, str]:
        return {
            "severity": self.severity,
            "metric": self.metric,
            "message": self.message,
            "suggestion": self.suggestion,
        }


@dataclass(frozen=True, slots=True)
class Suggestion:
    category: str
    title: str
    description: str
    impact: str
    difficulty: str

    def to_dict(self) -> dict[str, str]:
        return {
            "category": self.category,
            "title": self.title,
            "description": self.description,
            "impact": self.impact,
            "difficulty": self.difficulty,
        }


@dataclass(frozen=True, slots=True)
class Grade:
    letter: str
    description: str

    def to_dict(self) -> dict[str, str]:
        return {"grade": self.letter, "description": self.description}


_GRADES: tuple[tuple[int, Grade], ...] = (
    (90, Grade("A", "Excellent")),
    (80, Grade("B", "Good")),
    (70, Grade("C", "Fair")),
    (60, Grade("D", "Poor")),
)
_FAILING = Grade("F", "Critical")


@dataclass(slots=True)
class Evaluation:
    """Result of a single evaluation tick."""

    sample: MetricSample
    issues: list[Issue]
    suggestions: list[Suggestion]
    score: int
    grade: Grade
    history: dict[str, list[float | None]] = field(default_factory=dict)

    def to_dict(self) -> dict[str, object]:
        return {
            "timestamp": self.sample.timestamp,
            "metrics": self.sample.to_dict(),
            "history": {name: list(values) for name, values in self.history.items()},
            "issues": [issue.to_dict() for issue in self.issues],
            "suggestions": [suggestion.to_dict() for suggestion in self.suggestions],
            "score": self.score,
            "grade": self.grade.to_dict(),
        }


def classify_issues(sample: MetricSample) -> list[Issue]:
    """Return at most one issue per monitored metric."""

    issues: list[Issue] = []
    for metric in _MONITORED:
        value = getattr(sample, metric.attribute)
        if value is None:
            continue
        value = float(value)
        severity = metric.threshold.classify(value)
        if severity is None:
            continue
        qualifier = "critical" if severity == "critical" else "degraded"
        issues.append(
            Issue(
                severity=severity,
                metric=metric.name,
                message=f"{metric.label} {qualifier}: {value:g}{metric.unit}",
                suggestion=(
                    metric.critical_suggestion
                    if severity == "critical"
                    else metric.warning_suggestion
                ),
            )
        )
    return issues


def compute_score(sample: MetricSample) -> int:
    """Return the composite 0-100 score for *sample*.

    Metrics the statistics source did not report cost nothing.
    """

    score = 100
    if sample.fps is not None:
        if sample.fps < 30:
            score -= 20
        if sample.fps < 15:
            score -= 30
    if sample.rtt_ms is not None:
        if sample.rtt_ms > 100:
            score -= 15
        if sample.rtt_ms > 200:
            score -= 25
    if sample.memory_percent > 80:
        score -= 10
    if sample.memory_percent > 95:
        score -= 20
    if sample.frames_dropped is not None:
        if sample.frames_dropped > 5:
            score -= 10
        if sample.frames_dropped > 10:
            score -= 20
    return max(0, min(100, score))


def grade_for(score: int) -> Grade:
    for lower_bound, grade in _GRADES:
        if score >= lower_bound:
            return grade
    return _FAILING


def suggest_optimizations(sample: MetricSample) -> list[Suggestion]:
    """Advisory suggestions derived from raw metric values."""

    suggestions: list[Suggestion] = []
    if sample.fps is not None and sample.fps < 30:
        suggestions.append(
            Suggestion(
                category="video",
                title="Reduce video quality",
                description="Lower the resolution or frame rate to improve performance",
                impact="high",
                difficulty="easy",
            )
        )
    if sample.rtt_ms is not None and sample.rtt_ms > 50:
        suggestions.append(
            Suggestion(
                category="network",
                title="Optimise the network connection",
                description="Use a wired connection or improve the Wi-Fi signal",
                impact="high",
                difficulty="medium",
            )
        )
    if sample.memory_percent > 70:
        suggestions.append(
            Suggestion(
                category="system",
                title="Free memory",
                description="Close unneeded applications to release RAM",
                impact="medium",
                difficulty="easy",
            )
        )
    if sample.cpu_percent > 80:
        suggestions.append(
            Suggestion(
                category="system",
                title="Reduce CPU load",
                description="Stop background processes or lower encoding settings",
                impact="high",
                difficulty="medium",
            )
        )
    return suggestions


class PerformanceEvaluator:
    """Keep a rolling history of samples and grade each one."""

    def __init__(self, *, capacity: int = HISTORY_CAPACITY) -> None:
        if capacity <= 0:
            raise ValueError("History capacity must be positive")
        self._capacity = capacity
        self._history: dict[str, Deque[float | None]] = {
            name: deque(maxlen=capacity) for name in HISTORY_METRICS
        }
        self._subscribers: dict[int, Callable[[dict[str, object]], None]] = {}
        self._tokens = itertools.count(1)
        self._last: Evaluation | None = None

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def last(self) -> Evaluation | None:
        return self._last

    def history(self) -> dict[str, list[float | None]]:
        return {name: list(values) for name, values in self._history.items()}

    def evaluate(self, sample: MetricSample) -> Evaluation:
        for name, values in self._history.items():
            value = getattr(sample, name)
            values.append(float(value) if value is not None else None)
        score = compute_score(sample)
        evaluation = Evaluation(
            sample=sample,
            issues=classify_issues(sample),
            suggestions=suggest_optimizations(sample),
            score=score,
            grade=grade_for(score),
            history=self.history(),
        )
        self._last = evaluation
        self._notify(evaluation)
        return evaluation

    def export(self) -> dict[str, object]:
        """Return the metrics-export snapshot of the latest evaluation."""

        if self._last is None:
            empty = MetricSample(timestamp=time.time())
            return {
                "timestamp": empty.timestamp,
                "metrics": empty.to_dict(),
                "history": self.history(),
                "issues": [],
                "suggestions": [],
                "score": 100,
                "grade": grade_for(100).to_dict(),
            }
        snapshot = self._last.to_dict()
        snapshot["history"] = self.history()
        return snapshot

    def subscribe(self, callback: Callable[[dict[str, object]], None]) -> int:
        token = next(self._tokens)
        self._subscribers[token] = callback
        return token

    def unsubscribe(self, token: int) -> None:
        self._subscribers.pop(token, None)

    def reset(self) -> None:
        for values in self._history.values():
            values.clear()
        self._last = None

    def _notify(self, evaluation: Evaluation) -> None:
        if not self._subscribers:
            return
        snapshot = evaluation.to_dict()
        for callback in list(self._subscribers.values()):
            try:
                callback(snapshot)
            except Exception:
                logger.exception("Performance subscriber failed")


__all__ = [
    "Evaluation",
    "Grade",
    "HISTORY_CAPACITY",
    "HISTORY_METRICS",
    "Issue",
    "PerformanceEvaluator",
    "Suggestion",
    "THRESHOLDS",
    "Threshold",
    "classify_issues",
    "compute_score",
    "grade_for",
    "suggest_optimizations",
]
