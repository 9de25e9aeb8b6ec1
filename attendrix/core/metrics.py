"""In-process metrics for the sync pipeline (Prometheus text format)."""

from __future__ import annotations

import re
import threading
from typing import Dict, Iterable, List, Optional, Tuple

LabelValues = Tuple[str, ...]


def _escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\"", "\\\"").replace("\n", "\\n")


class _Metric:
    kind = "untyped"

    def __init__(self, name: str, help_text: str = "", label_names: Optional[Iterable[str]] = None):
        self.name = name
        self.help_text = help_text
        self.label_names = tuple(label_names or ())
        self._values: Dict[LabelValues, float] = {}
        self._lock = threading.Lock()

    def _key(self, labels: Optional[Dict[str, str]]) -> LabelValues:
        labels = labels or {}
        unknown = set(labels) - set(self.label_names)
        if unknown:
            raise ValueError(f"{self.name} has no labels {sorted(unknown)}")
        return tuple(str(labels.get(name, "")) for name in self.label_names)

    def _add(self, labels: Optional[Dict[str, str]], amount: float) -> None:
        key = self._key(labels)
        with self._lock:
            self._values[key] = self._values.get(key, 0.0) + float(amount)

    def value(self, labels: Optional[Dict[str, str]] = None) -> float:
        with self._lock:
            return self._values.get(self._key(labels), 0.0)

    def export(self) -> List[str]:
        lines = []
        if self.help_text:
            lines.append(f"# HELP {self.name} {self.help_text}")
        lines.append(f"# TYPE {self.name} {self.kind}")
        with self._lock:
            samples = sorted(self._values.items())
        for label_values, value in samples:
            rendered = ""
            if self.label_names:
                pairs = ",".join(f'{n}="{_escape(v)}"' for n, v in zip(self.label_names, label_values))
                rendered = "{" + pairs + "}"
            lines.append(f"{self.name}{rendered} {value}")
        return lines

    def reset(self) -> None:
        with self._lock:
            self._values.clear()


class Counter(_Metric):
    kind = "counter"

    def inc(self, labels: Optional[Dict[str, str]] = None, amount: float = 1.0) -> None:
        if amount < 0:
            raise ValueError("counters only go up")
        self._add(labels, amount)


class Gauge(_Metric):
    kind = "gauge"

    def set(self, value: float, labels: Optional[Dict[str, str]] = None) -> None:
        key = self._key(labels)
        with self._lock:
            self._values[key] = float(value)


class MetricsRegistry:
    def __init__(self):
        self._metrics: Dict[str, _Metric] = {}
        self._lock = threading.Lock()

    def _register(self, cls, name: str, help_text: str, label_names) -> _Metric:
        with self._lock:
            metric = self._metrics.get(name)
            if metric is None:
                metric = self._metrics[name] = cls(name, help_text, label_names)
            elif not isinstance(metric, cls):
                raise ValueError(f"{name} is already registered as a {metric.kind}")
            return metric

    def counter(self, name: str, help_text: str = "", label_names: Optional[Iterable[str]] = None) -> Counter:
        return self._register(Counter, name, help_text, label_names)

    def gauge(self, name: str, help_text: str = "", label_names: Optional[Iterable[str]] = None) -> Gauge:
        return self._register(Gauge, name, help_text, label_names)

    def export_prometheus(self) -> str:
        lines: List[str] = []
        for metric in self._metrics.values():
            lines.extend(metric.export())
        return "\n".join(lines) + "\n"

    def reset(self) -> None:
        for metric in self._metrics.values():
            metric.reset()


METRICS = MetricsRegistry()

http_requests_total = METRICS.counter(
    "http_requests_total", "HTTP requests served", ["method", "path", "status"]
)
attendance_actions_total = METRICS.counter(
    "attendance_actions_total", "Attendance actions by outcome", ["action", "outcome"]
)
mirror_buffer_enqueued_total = METRICS.counter(
    "mirror_buffer_enqueued_total", "Writes accepted into the mirror write buffer"
)
mirror_buffer_skipped_total = METRICS.counter(
    "mirror_buffer_skipped_total", "Zero-delta duplicate writes dropped"
)
mirror_buffer_superseded_total = METRICS.counter(
    "mirror_buffer_superseded_total", "Writes merged into an already pending slot"
)
mirror_buffer_flushed_total = METRICS.counter(
    "mirror_buffer_flushed_total", "Buffered writes applied to the mirror", ["trigger"]
)
mirror_buffer_flush_failures_total = METRICS.counter(
    "mirror_buffer_flush_failures_total", "Flushes that failed and were re-queued"
)
mirror_tx_conflicts_total = METRICS.counter(
    "mirror_tx_conflicts_total", "Optimistic mirror transactions retried after a version conflict"
)
mirror_buffer_pending = METRICS.gauge("mirror_buffer_pending", "Users with a pending buffered write")


_ID_SEGMENT = re.compile(r"^(\d+|[0-9a-fA-F-]{8,})$")


def normalize_path(path: str) -> str:
    """Collapse numeric and UUID-like path segments to ``:id``."""
    segments = [":id" if _ID_SEGMENT.match(s) else s for s in path.split("/") if s]
    return "/" + "/".join(segments)
