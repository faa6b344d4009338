"""In-process metrics registry rendered in the Prometheus text format.

Counters, gauges and histograms are keyed by label values. The registry is
process-global; tests reset it between cases.
"""

from __future__ import annotations

import bisect
import re
import threading
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

LabelValues = Tuple[str, ...]

DEFAULT_LATENCY_BUCKETS = (0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0)
BATCH_BUCKETS = (1.0, 10.0, 60.0, 300.0, 900.0, 3600.0)


def _escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')


def _render_labels(pairs: Sequence[Tuple[str, str]]) -> str:
    if not pairs:
        return ""
    return "{" + ",".join(f'{name}="{_escape(value)}"' for name, value in pairs) + "}"


class _Metric:
    kind = "untyped"

    def __init__(self, name: str, help_text: str = "", label_names: Optional[Iterable[str]] = None):
        self.name = name
        self.help_text = help_text
        self.label_names = tuple(label_names or ())
        self._lock = threading.Lock()

    def _key(self, labels: Optional[Dict[str, str]]) -> LabelValues:
        labels = labels or {}
        return tuple(str(labels.get(name, "")) for name in self.label_names)

    def _pairs(self, key: LabelValues) -> List[Tuple[str, str]]:
        return list(zip(self.label_names, key))

    def header(self) -> List[str]:
        lines = []
        if self.help_text:
            lines.append(f"# HELP {self.name} {self.help_text}")
        lines.append(f"# TYPE {self.name} {self.kind}")
        return lines

    def samples(self) -> List[str]:
        raise NotImplementedError

    def reset(self) -> None:
        raise NotImplementedError


class _ScalarMetric(_Metric):
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._values: Dict[LabelValues, float] = {}

    def value(self, labels: Optional[Dict[str, str]] = None) -> float:
        with self._lock:
            return self._values.get(self._key(labels), 0.0)

    def samples(self) -> List[str]:
        with self._lock:
            items = list(self._values.items())
        return [f"{self.name}{_render_labels(self._pairs(key))} {value}" for key, value in items]

    def reset(self) -> None:
        with self._lock:
            self._values.clear()


class Counter(_ScalarMetric):
    kind = "counter"

    def inc(self, labels: Optional[Dict[str, str]] = None, amount: float = 1.0) -> None:
        if amount < 0:
            raise ValueError("counters only go up")
        key = self._key(labels)
        with self._lock:
            self._values[key] = self._values.get(key, 0.0) + float(amount)


class Gauge(_ScalarMetric):
    kind = "gauge"

    def set(self, value: float, labels: Optional[Dict[str, str]] = None) -> None:
        with self._lock:
            self._values[self._key(labels)] = float(value)


class Histogram(_Metric):
    kind = "histogram"

    def __init__(self, name: str, help_text: str = "", label_names=None, buckets: Sequence[float] = DEFAULT_LATENCY_BUCKETS):
        super().__init__(name, help_text, label_names)
        self.buckets = tuple(sorted(buckets))
        # per label set: [count per bucket..., +Inf count], sum
        self._series: Dict[LabelValues, Tuple[List[int], float]] = {}

    def observe(self, value: float, labels: Optional[Dict[str, str]] = None) -> None:
        key = self._key(labels)
        index = bisect.bisect_left(self.buckets, value)
        with self._lock:
            counts, total = self._series.get(key, ([0] * (len(self.buckets) + 1), 0.0))
            counts[index] += 1
            self._series[key] = (counts, total + value)

    def count(self, labels: Optional[Dict[str, str]] = None) -> int:
        with self._lock:
            series = self._series.get(self._key(labels))
        return sum(series[0]) if series else 0

    def samples(self) -> List[str]:
        with self._lock:
            items = [(key, list(counts), total) for key, (counts, total) in self._series.items()]
        lines = []
        for key, counts, total in items:
            pairs = self._pairs(key)
            cumulative = 0
            for bound, n in zip(list(self.buckets) + [float("inf")], counts):
                cumulative += n
                le = "+Inf" if bound == float("inf") else repr(bound)
                lines.append(f"{self.name}_bucket{_render_labels(pairs + [('le', le)])} {cumulative}")
            lines.append(f"{self.name}_sum{_render_labels(pairs)} {total}")
            lines.append(f"{self.name}_count{_render_labels(pairs)} {cumulative}")
        return lines

    def reset(self) -> None:
        with self._lock:
            self._series.clear()


class MetricsRegistry:
    def __init__(self):
        self._metrics: Dict[str, _Metric] = {}
        self._lock = threading.Lock()

    def _register(self, metric: _Metric) -> _Metric:
        with self._lock:
            existing = self._metrics.get(metric.name)
            if existing is not None:
                if type(existing) is not type(metric):
                    raise ValueError(f"metric {metric.name} already registered as {existing.kind}")
                return existing
            self._metrics[metric.name] = metric
            return metric

    def counter(self, name: str, help_text: str = "", label_names=None) -> Counter:
        return self._register(Counter(name, help_text, label_names))

    def gauge(self, name: str, help_text: str = "", label_names=None) -> Gauge:
        return self._register(Gauge(name, help_text, label_names))

    def histogram(self, name: str, help_text: str = "", label_names=None, buckets=DEFAULT_LATENCY_BUCKETS) -> Histogram:
        return self._register(Histogram(name, help_text, label_names, buckets))

    def export_prometheus(self) -> str:
        with self._lock:
            metrics = list(self._metrics.values())
        lines: List[str] = []
        for metric in metrics:
            lines.extend(metric.header())
            lines.extend(metric.samples())
        return "\n".join(lines) + "\n"

    def reset(self) -> None:
        with self._lock:
            metrics = list(self._metrics.values())
        for metric in metrics:
            metric.reset()


METRICS = MetricsRegistry()

http_requests_total = METRICS.counter(
    "http_requests_total", "HTTP requests by route template and status", ["method", "path", "status"]
)
http_request_duration_seconds = METRICS.histogram(
    "http_request_duration_seconds", "HTTP request latency", ["method", "path"]
)
streak_updates_total = METRICS.counter(
    "streak_updates_total", "Streak ledger writes by outcome", ["category", "branch"]
)
badges_awarded_total = METRICS.counter("badges_awarded_total", "Badges awarded", ["badge_type"])
compliance_checks_total = METRICS.counter(
    "compliance_checks_total", "Daily compliance evaluations", ["is_compliant"]
)
cache_requests_total = METRICS.counter("cache_requests_total", "Cache lookups by tier", ["tier", "result"])
cache_primary_healthy = METRICS.gauge("cache_primary_healthy", "1 while the redis tier is serving")
batch_users_total = METRICS.counter("batch_users_total", "Users processed by the nightly batch", ["outcome"])
batch_duration_seconds = METRICS.histogram(
    "batch_duration_seconds", "Nightly batch wall time", buckets=BATCH_BUCKETS
)


_ID_SEGMENT = re.compile(r"^(\d+|[0-9a-fA-F-]{8,})$")


def normalize_path(path: str) -> str:
    """Fallback label for unmatched routes: id-like segments become :id."""
    segments = [":id" if _ID_SEGMENT.match(s) else s for s in path.split("/") if s]
    return "/" + "/".join(segments)
