"""Metrics surface for event processing.

The pipeline only emits; storage and display belong to whoever implements
``MetricsSink``. ``InMemoryMetrics`` is the default sink and backs the
``/api/admin/metrics`` snapshot.
"""
import threading
from collections import defaultdict
from typing import Optional, Protocol

EVENTS_RECEIVED = "events_received_total"
EVENTS_SUCCEEDED = "events_succeeded_total"
EVENTS_DUPLICATE = "events_duplicate_total"
EVENTS_FAILED = "events_failed_total"
EVENTS_DEAD_LETTERED = "events_dead_lettered_total"
QUEUE_ENQUEUED = "orphaned_queue_enqueued_total"
QUEUE_TICKS_SKIPPED = "orphaned_queue_ticks_skipped_total"
QUEUE_DEPTH = "orphaned_queue_depth"
TIME_TO_RESOLUTION = "event_time_to_resolution_seconds"


class MetricsSink(Protocol):
    def increment(self, name: str, value: float = 1, labels: Optional[dict[str, str]] = None) -> None: ...

    def gauge(self, name: str, value: float) -> None: ...

    def observe(self, name: str, value: float) -> None: ...


def _key(name: str, labels: Optional[dict[str, str]]) -> str:
    if not labels:
        return name
    rendered = ",".join(f'{k}="{v}"' for k, v in sorted(labels.items()))
    return f"{name}{{{rendered}}}"


class InMemoryMetrics:
    """Thread-safe counters, gauges and histogram samples."""

    def __init__(self, max_samples: int = 10000):
        self._lock = threading.Lock()
        self._counters: dict[str, float] = defaultdict(float)
        self._gauges: dict[str, float] = {}
        self._samples: dict[str, list[float]] = defaultdict(list)
        self._max_samples = max_samples

    def increment(self, name: str, value: float = 1, labels: Optional[dict[str, str]] = None) -> None:
        with self._lock:
            self._counters[_key(name, labels)] += value

    def gauge(self, name: str, value: float) -> None:
        with self._lock:
            self._gauges[name] = value

    def observe(self, name: str, value: float) -> None:
        with self._lock:
            samples = self._samples[name]
            samples.append(value)
            if len(samples) > self._max_samples:
                del samples[: len(samples) - self._max_samples]

    def counter_value(self, name: str, labels: Optional[dict[str, str]] = None) -> float:
        with self._lock:
            return self._counters.get(_key(name, labels), 0)

    def gauge_value(self, name: str) -> Optional[float]:
        with self._lock:
            return self._gauges.get(name)

    def samples(self, name: str) -> list[float]:
        with self._lock:
            return list(self._samples.get(name, []))

    def snapshot(self) -> dict:
        with self._lock:
            histograms = {}
            for name, samples in self._samples.items():
                ordered = sorted(samples)
                histograms[name] = {
                    "count": len(ordered),
                    "sum": sum(ordered),
                    "p50": ordered[len(ordered) // 2] if ordered else None,
                    "max": ordered[-1] if ordered else None,
                }
            return {
                "counters": dict(self._counters),
                "gauges": dict(self._gauges),
                "histograms": histograms,
            }
