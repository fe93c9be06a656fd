"""In-process metrics for the provisioning pipeline.

Counters are kept per (name, tags) series so that questions like "how many
relay submissions of type SAFE-CREATE" or "how many steps were skipped"
can be answered without a metrics backend. Histograms keep a bounded
window of recent samples.
"""

from __future__ import annotations

from collections import defaultdict, deque
from threading import Lock
from typing import Any

_HISTOGRAM_WINDOW = 2_000

SeriesKey = tuple[str, tuple[tuple[str, str], ...]]


def _key(name: str, tags: dict[str, str]) -> SeriesKey:
    return name, tuple(sorted((k, str(v)) for k, v in tags.items()))


def _render(key: SeriesKey) -> str:
    name, tags = key
    if not tags:
        return name
    return name + "{" + ",".join(f"{k}={v}" for k, v in tags) + "}"


def _summary(samples: deque[float]) -> dict[str, float]:
    if not samples:
        return {"count": 0}
    ordered = sorted(samples)
    n = len(ordered)
    return {
        "count": n,
        "min": ordered[0],
        "max": ordered[-1],
        "avg": sum(ordered) / n,
        "p50": ordered[n // 2],
        "p95": ordered[min(n - 1, int(n * 0.95))],
    }


class MetricsCollector:
    """Thread-safe counters, gauges and histograms keyed by name and tags."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._counters: dict[SeriesKey, float] = defaultdict(float)
        self._gauges: dict[SeriesKey, float] = {}
        self._histograms: dict[SeriesKey, deque[float]] = defaultdict(
            lambda: deque(maxlen=_HISTOGRAM_WINDOW)
        )

    def incr(self, name: str, value: float = 1.0, **tags: str) -> None:
        with self._lock:
            self._counters[_key(name, tags)] += value

    def gauge(self, name: str, value: float, **tags: str) -> None:
        with self._lock:
            self._gauges[_key(name, tags)] = value

    def histogram(self, name: str, value: float, **tags: str) -> None:
        with self._lock:
            self._histograms[_key(name, tags)].append(value)

    def counter(self, name: str, **tags: str) -> float:
        """Sum of every ``name`` series whose tags include ``tags``."""
        wanted = {(k, str(v)) for k, v in tags.items()}
        with self._lock:
            return sum(
                value
                for (series, series_tags), value in self._counters.items()
                if series == name and wanted.issubset(series_tags)
            )

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            return {
                "counters": {_render(k): v for k, v in self._counters.items()},
                "gauges": {_render(k): v for k, v in self._gauges.items()},
                "histograms": {_render(k): _summary(v) for k, v in self._histograms.items()},
            }

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()
            self._gauges.clear()
            self._histograms.clear()


metrics = MetricsCollector()
