"""In-process run and node metrics.

Series are keyed by metric name plus a sorted label tuple, so the
Prometheus renderer never has to re-parse flattened keys.  The JSON
summary served at ``/api/metrics/summary`` flattens each series to
``name{label=value,...}``.

Families recorded by the engine:

* ``run_started_total`` / ``run_rejected_total``
* ``run_completed_total{status}`` and ``run_duration_seconds{status}``
* ``node_execution_total{spec_id,status}``
* ``retry_attempts_total{spec_id}`` / ``node_timeout_total{spec_id}``
* ``provider_tokens_total{model}``
"""

from __future__ import annotations

import logging
import threading
from collections import defaultdict
from typing import Any

logger = logging.getLogger("flowengine.metrics")

PROMETHEUS_PREFIX = "flowengine_"

# Quantiles exported for every observed series; 1.0 is the maximum.
SUMMARY_QUANTILES = (0.5, 0.95, 1.0)

Labels = tuple[tuple[str, str], ...]
SeriesKey = tuple[str, Labels]


def _labels(labels: dict[str, str] | None) -> Labels:
    if not labels:
        return ()
    return tuple(sorted((str(k), str(v)) for k, v in labels.items()))


def _quantile(ordered: list[float], q: float) -> float:
    # Nearest-rank on an ascending list; q=1.0 yields the max.
    return ordered[max(0, int(len(ordered) * q) - 1)]


class MetricsCollector:
    """Counters and raw-sample histograms held in memory."""

    def __init__(self):
        self._lock = threading.Lock()
        self._counters: dict[SeriesKey, int] = defaultdict(int)
        self._samples: dict[SeriesKey, list[float]] = defaultdict(list)

    def increment_counter(self, name: str, value: int = 1, labels: dict[str, str] | None = None):
        with self._lock:
            self._counters[(name, _labels(labels))] += value

    def observe_histogram(self, name: str, value: float, labels: dict[str, str] | None = None):
        with self._lock:
            self._samples[(name, _labels(labels))].append(float(value))

    def get_counter(self, name: str, labels: dict[str, str] | None = None) -> int:
        return self._counters.get((name, _labels(labels)), 0)

    def get_histogram_stats(self, name: str, labels: dict[str, str] | None = None) -> dict[str, Any]:
        return self._stats(self._samples.get((name, _labels(labels)), []))

    @staticmethod
    def _stats(values: list[float]) -> dict[str, Any]:
        if not values:
            return {"count": 0, "sum": 0, "min": 0, "max": 0, "avg": 0, "p95": 0}
        ordered = sorted(values)
        total = sum(ordered)
        return {
            "count": len(ordered),
            "sum": total,
            "min": ordered[0],
            "max": ordered[-1],
            "avg": total / len(ordered),
            "p95": _quantile(ordered, 0.95),
        }

    def counter_series(self) -> list[tuple[str, Labels, int]]:
        with self._lock:
            return [(name, labels, value) for (name, labels), value in self._counters.items()]

    def sample_series(self) -> list[tuple[str, Labels, list[float]]]:
        with self._lock:
            return [(name, labels, sorted(values)) for (name, labels), values in self._samples.items()]

    def get_all_metrics(self) -> dict[str, Any]:
        counters = {self._build_key(n, dict(lb)): v for n, lb, v in self.counter_series()}
        histograms = {self._build_key(n, dict(lb)): self._stats(vals) for n, lb, vals in self.sample_series()}
        return {"counters": counters, "histograms": histograms}

    def reset(self):
        with self._lock:
            self._counters.clear()
            self._samples.clear()

    @staticmethod
    def _build_key(name: str, labels: dict[str, str] | None) -> str:
        pairs = _labels(labels)
        if not pairs:
            return name
        return name + "{" + ",".join(f"{k}={v}" for k, v in pairs) + "}"


metrics = MetricsCollector()


# ── Recorders used by the engine ────────────────────────────────────────────


def record_run_started():
    metrics.increment_counter("run_started_total")


def record_run_completed(duration_seconds: float, status: str):
    """Count a finished run and observe its wall-clock duration.

    *status* is the workflow status value: ``completed``,
    ``completed_with_skips`` or ``failed``.
    """
    labels = {"status": status}
    metrics.increment_counter("run_completed_total", labels=labels)
    metrics.observe_histogram("run_duration_seconds", duration_seconds, labels=labels)


def record_run_rejected():
    metrics.increment_counter("run_rejected_total")


def record_node_execution(spec_id: str, status: str):
    metrics.increment_counter("node_execution_total", labels={"spec_id": spec_id, "status": status})


def record_retry_attempt(spec_id: str):
    metrics.increment_counter("retry_attempts_total", labels={"spec_id": spec_id})


def record_node_timeout(spec_id: str, node_id: str, timeout_ms: int):
    metrics.increment_counter("node_timeout_total", labels={"spec_id": spec_id})
    logger.warning("Node %s (%s) exceeded its %d ms timeout", node_id, spec_id, timeout_ms)


def record_provider_tokens(model: str, tokens: int):
    metrics.increment_counter("provider_tokens_total", value=tokens, labels={"model": model})


def get_metrics_summary() -> dict:
    return metrics.get_all_metrics()


# ── Prometheus exposition ───────────────────────────────────────────────────


def _render_labels(labels: Labels, extra: tuple[str, str] | None = None) -> str:
    pairs = list(labels) + ([extra] if extra else [])
    if not pairs:
        return ""
    return "{" + ",".join(f'{k}="{v}"' for k, v in pairs) + "}"


def _format_quantile(q: float) -> str:
    return "1.0" if q == 1.0 else f"{q:g}"


def to_prometheus_text() -> str:
    """Render every series in the text exposition format.

    One ``# TYPE`` line is written per family.  Histograms are exported as
    summaries carrying ``_count``, ``_sum`` and the quantiles in
    :data:`SUMMARY_QUANTILES`.
    """
    lines: list[str] = []

    counters: dict[str, list[tuple[Labels, int]]] = defaultdict(list)
    for name, labels, value in metrics.counter_series():
        counters[PROMETHEUS_PREFIX + name].append((labels, value))
    for family, series in counters.items():
        lines.append(f"# TYPE {family} counter")
        lines.extend(f"{family}{_render_labels(labels)} {value}" for labels, value in series)

    summaries: dict[str, list[tuple[Labels, list[float]]]] = defaultdict(list)
    for name, labels, ordered in metrics.sample_series():
        summaries[PROMETHEUS_PREFIX + name].append((labels, ordered))
    for family, series in summaries.items():
        lines.append(f"# TYPE {family} summary")
        for labels, ordered in series:
            rendered = _render_labels(labels)
            lines.append(f"{family}_count{rendered} {len(ordered)}")
            lines.append(f"{family}_sum{rendered} {sum(ordered):.6f}")
            if not ordered:
                continue
            for q in SUMMARY_QUANTILES:
                quantile_labels = _render_labels(labels, ("quantile", _format_quantile(q)))
                lines.append(f"{family}{quantile_labels} {_quantile(ordered, q):.6f}")

    return "\n".join(lines) + "\n"
