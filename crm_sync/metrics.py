"""
Metrics collection and Prometheus-compatible exposition.

Counters and gauges may carry labels (``entity="clients"``); reading a
metric without labels sums every labelled series.
"""

from __future__ import annotations

import time
from collections import defaultdict
from typing import Any

SeriesKey = tuple[str, tuple[tuple[str, str], ...]]


def _key(prefix: str, name: str, labels: dict[str, str]) -> SeriesKey:
    return f"{prefix}_{name}", tuple(sorted(labels.items()))


def _series_name(key: SeriesKey) -> str:
    name, labels = key
    if not labels:
        return name
    rendered = ",".join(f'{k}="{v}"' for k, v in labels)
    return f"{name}{{{rendered}}}"


class MetricsCollector:
    def __init__(self, prefix: str = "sync") -> None:
        self._prefix = prefix
        self._counters: dict[SeriesKey, int] = defaultdict(int)
        self._gauges: dict[SeriesKey, float] = {}
        self._start_time = time.time()

    def inc(self, name: str, value: int = 1, **labels: str) -> None:
        self._counters[_key(self._prefix, name, labels)] += value

    def set_gauge(self, name: str, value: float, **labels: str) -> None:
        self._gauges[_key(self._prefix, name, labels)] = value

    def get(self, name: str, **labels: str) -> int | float:
        """Read one series, or the sum of all series when no labels are given."""
        full, wanted = _key(self._prefix, name, labels)
        for series in (self._gauges, self._counters):
            matches = [
                value for (series_name, series_labels), value in series.items()
                if series_name == full and (not wanted or series_labels == wanted)
            ]
            if matches:
                return sum(matches)
        return 0

    def to_prometheus(self) -> str:
        lines = []
        for kind, series in (("counter", self._counters), ("gauge", self._gauges)):
            typed: set[str] = set()
            for key, value in sorted(series.items()):
                if key[0] not in typed:
                    typed.add(key[0])
                    lines.append(f"# TYPE {key[0]} {kind}")
                lines.append(f"{_series_name(key)} {value}")
        uptime = time.time() - self._start_time
        lines.append(f"# TYPE {self._prefix}_uptime_seconds gauge")
        lines.append(f"{self._prefix}_uptime_seconds {uptime:.1f}")
        return "\n".join(lines) + "\n"

    def to_dict(self) -> dict[str, Any]:
        return {
            "counters": {_series_name(k): v for k, v in self._counters.items()},
            "gauges": {_series_name(k): v for k, v in self._gauges.items()},
            "uptime_seconds": time.time() - self._start_time,
        }
