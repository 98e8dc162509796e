"""Process-local metrics for the graph API, rendered as Prometheus text.

Families (all prefixed ``graph_memory_``):

    requests_total{method,path,status}        counter
    request_duration_seconds{path}            histogram
    exchanges_total{agent,outcome}            counter   (written | skipped | failed)
    searches_total{agent}                     counter
    search_duration_seconds{agent}            histogram
    entities{agent}, triples{agent}           gauge
"""

from __future__ import annotations

import threading
from collections import defaultdict
from typing import Any, Dict, List, Optional, Sequence, Tuple

PREFIX = "graph_memory"

LATENCY_BUCKETS: Tuple[float, ...] = (
    0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0,
)

# snapshot key -> (metric name, type, label names, help)
_SCALAR_FAMILIES: List[Tuple[str, str, str, Tuple[str, ...], str]] = [
    ("requests_total", "requests_total", "counter", ("method", "path", "status"),
     "Total HTTP requests processed."),
    ("exchanges_total", "exchanges_total", "counter", ("agent", "outcome"),
     "Ingested exchanges, by agent and outcome."),
    ("searches_total", "searches_total", "counter", ("agent",),
     "Link-expansion searches run, by agent."),
    ("entities_by_agent", "entities", "gauge", ("agent",),
     "Registered entities, by agent."),
    ("triples_by_agent", "triples", "gauge", ("agent",),
     "Stored triples, by agent."),
]

_HISTOGRAM_FAMILIES: List[Tuple[str, str, str, str]] = [
    ("request_duration", "request_duration_seconds", "path", "HTTP request latency in seconds."),
    ("search_duration", "search_duration_seconds", "agent", "Link-expansion search latency in seconds."),
]


class _Histogram:
    """Cumulative bucket counts with sum and count, one series per label value."""

    def __init__(self, buckets: Sequence[float] = LATENCY_BUCKETS) -> None:
        self.buckets = tuple(buckets)
        self.series: Dict[str, List[int]] = {}
        self.sums: Dict[str, float] = defaultdict(float)
        self.counts: Dict[str, int] = defaultdict(int)

    def observe(self, key: str, seconds: float) -> None:
        value = max(0.0, float(seconds))
        hits = self.series.setdefault(key, [0] * len(self.buckets))
        for i, bound in enumerate(self.buckets):
            if value <= bound:
                hits[i] += 1
        self.sums[key] += value
        self.counts[key] += 1

    def export(self) -> Dict[str, Any]:
        return {
            "buckets": {key: list(hits) for key, hits in self.series.items()},
            "sum": dict(self.sums),
            "count": dict(self.counts),
        }


class MetricsCollector:
    """Thread-safe collector shared by the middleware, ingest path and API."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.reset()

    def reset(self) -> None:
        """Drop every series (tests call this between cases)."""
        with self._lock:
            self._requests: Dict[Tuple[str, str, str], int] = defaultdict(int)
            self._exchanges: Dict[Tuple[str, str], int] = defaultdict(int)
            self._searches: Dict[str, int] = defaultdict(int)
            self._entities: Dict[str, int] = {}
            self._triples: Dict[str, int] = {}
            self._histograms = {name: _Histogram() for name, *_ in _HISTOGRAM_FAMILIES}

    def record_request(self, method: str, path: str, status: int, duration_seconds: float) -> None:
        key = ((method or "GET").upper(), path or "/", str(status))
        with self._lock:
            self._requests[key] += 1
            self._histograms["request_duration"].observe(key[1], duration_seconds)

    def inc_exchange(self, agent_id: str, outcome: str) -> None:
        with self._lock:
            self._exchanges[(str(agent_id), str(outcome))] += 1

    def inc_search(self, agent_id: str, duration_seconds: Optional[float] = None) -> None:
        with self._lock:
            self._searches[str(agent_id)] += 1
            if duration_seconds is not None:
                self._histograms["search_duration"].observe(str(agent_id), duration_seconds)

    def set_graph_size(self, agent_id: str, *, entities: int, triples: int) -> None:
        with self._lock:
            self._entities[str(agent_id)] = max(0, int(entities))
            self._triples[str(agent_id)] = max(0, int(triples))

    def snapshot(self) -> Dict[str, Any]:
        """Copy of every series, safe to read without the lock."""
        with self._lock:
            snap: Dict[str, Any] = {
                "requests_total": dict(self._requests),
                "exchanges_total": dict(self._exchanges),
                "searches_total": dict(self._searches),
                "entities_by_agent": dict(self._entities),
                "triples_by_agent": dict(self._triples),
            }
            for name, hist in self._histograms.items():
                snap[name] = hist.export()
            return snap

    def render_prometheus(self) -> str:
        snap = self.snapshot()
        lines: List[str] = []

        for key, name, kind, labels, help_text in _SCALAR_FAMILIES:
            lines.append(f"# HELP {PREFIX}_{name} {help_text}")
            lines.append(f"# TYPE {PREFIX}_{name} {kind}")
            for label_values, value in sorted(snap[key].items()):
                if not isinstance(label_values, tuple):
                    label_values = (label_values,)
                lines.append(f"{PREFIX}_{name}{_labels(zip(labels, label_values))} {int(value)}")

        for key, name, label, help_text in _HISTOGRAM_FAMILIES:
            lines.append(f"# HELP {PREFIX}_{name} {help_text}")
            lines.append(f"# TYPE {PREFIX}_{name} histogram")
            data = snap[key]
            for series in sorted(data["buckets"]):
                total = int(data["count"].get(series, 0))
                for bound, hits in zip(LATENCY_BUCKETS, data["buckets"][series]):
                    lines.append(
                        f"{PREFIX}_{name}_bucket"
                        f"{_labels([(label, series), ('le', f'{bound:g}')])} {int(hits)}"
                    )
                lines.append(f"{PREFIX}_{name}_bucket{_labels([(label, series), ('le', '+Inf')])} {total}")
                lines.append(
                    f"{PREFIX}_{name}_sum{_labels([(label, series)])} "
                    f"{_format_float(data['sum'].get(series, 0.0))}"
                )
                lines.append(f"{PREFIX}_{name}_count{_labels([(label, series)])} {total}")

        return "\n".join(lines) + "\n"


collector = MetricsCollector()


def record_request_metric(*, method: str, path: str, status: int, duration_seconds: float) -> None:
    collector.record_request(method, path, status, duration_seconds)


def record_exchange(agent_id: str, outcome: str) -> None:
    collector.inc_exchange(agent_id, outcome)


def record_search(agent_id: str, duration_seconds: Optional[float] = None) -> None:
    collector.inc_search(agent_id, duration_seconds)


def set_graph_size(agent_id: str, *, entities: int, triples: int) -> None:
    collector.set_graph_size(agent_id, entities=entities, triples=triples)


def render_prometheus_metrics() -> str:
    return collector.render_prometheus()


def reset_metrics() -> None:
    collector.reset()


def _labels(pairs) -> str:
    body = ",".join(f'{name}="{_escape(value)}"' for name, value in pairs)
    return "{" + body + "}"


def _escape(value: Any) -> str:
    return str(value).replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')


def _format_float(value: float) -> str:
    text = f"{float(value):.9f}".rstrip("0").rstrip(".")
    return text or "0"
