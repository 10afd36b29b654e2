"""
Metrics collection and Prometheus-compatible exposition.

Counters track firings and per-subscriber delivery outcomes, gauges track
the store size and the next scheduled firing, and summaries track how long
each dispatch took.
"""

from __future__ import annotations

import time
from collections import defaultdict

PREFIX = "wafflecord_"


class MetricsCollector:
    """
    In-process counters, gauges and summaries with Prometheus text export.
    """

    def __init__(self) -> None:
        self._counters: dict[str, int] = defaultdict(int)
        self._gauges: dict[str, float] = {}
        self._summaries: dict[str, tuple[int, float]] = {}
        self._start_time = time.time()

    def inc(self, name: str, value: int = 1) -> None:
        """Increment a counter."""
        self._counters[PREFIX + name] += value

    def set_gauge(self, name: str, value: float) -> None:
        self._gauges[PREFIX + name] = value

    def observe(self, name: str, value: float) -> None:
        """Add one observation to a count/sum summary."""
        count, total = self._summaries.get(PREFIX + name, (0, 0.0))
        self._summaries[PREFIX + name] = (count + 1, total + value)

    def get(self, name: str) -> int | float:
        full = PREFIX + name
        if full in self._gauges:
            return self._gauges[full]
        if full in self._summaries:
            return self._summaries[full][0]
        return self._counters.get(full, 0)

    def to_prometheus(self) -> str:
        lines = []
        for name, value in sorted(self._counters.items()):
            lines += [f"# TYPE {name} counter", f"{name} {value}"]
        for name, value in sorted(self._gauges.items()):
            lines += [f"# TYPE {name} gauge", f"{name} {value}"]
        for name, (count, total) in sorted(self._summaries.items()):
            lines += [
                f"# TYPE {name} summary",
                f"{name}_count {count}",
                f"{name}_sum {total:.3f}",
            ]
        lines.append(f"# TYPE {PREFIX}uptime_seconds gauge")
        lines.append(f"{PREFIX}uptime_seconds {time.time() - self._start_time:.1f}")
        return "\n".join(lines) + "\n"
