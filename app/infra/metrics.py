"""In-process metrics sink.

Counters and timing observations keyed by name plus sorted tags. The
sink is injected into services; tests use ``reset()`` between cases.
"""

import logging
import threading
from collections import defaultdict
from typing import Optional

logger = logging.getLogger(__name__)


def _series(name: str, tags: dict) -> str:
    if not tags:
        return name
    labels = ",".join(f"{k}={v}" for k, v in sorted(tags.items()))
    return f"{name}{{{labels}}}"


class MetricsSink:
    """Collects counters and observations."""

    def __init__(self):
        self._lock = threading.Lock()
        self._counters: dict[str, float] = defaultdict(float)
        self._observations: dict[str, list[float]] = defaultdict(list)

    def increment(self, name: str, value: float = 1, **tags) -> None:
        with self._lock:
            self._counters[_series(name, tags)] += value

    def observe(self, name: str, value: float, **tags) -> None:
        with self._lock:
            self._observations[_series(name, tags)].append(value)

    def counter(self, name: str, **tags) -> float:
        return self._counters.get(_series(name, tags), 0)

    def snapshot(self) -> dict:
        """Return counters and observation summaries."""
        with self._lock:
            summaries = {}
            for series, values in self._observations.items():
                summaries[series] = {
                    "count": len(values),
                    "avg": sum(values) / len(values) if values else 0.0,
                    "max": max(values) if values else 0.0,
                }
            return {"counters": dict(self._counters), "observations": summaries}

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()
            self._observations.clear()

    def flush(self) -> dict:
        """Snapshot, then reset."""
        data = self.snapshot()
        self.reset()
        return data


_metrics: Optional[MetricsSink] = None


def get_metrics() -> MetricsSink:
    """Get the process-wide metrics sink."""
    global _metrics
    if _metrics is None:
        _metrics = MetricsSink()
    return _metrics
