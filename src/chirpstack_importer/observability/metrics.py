"""Metrics collection for registry traffic and row outcomes.

Metric names:
    registry_requests_total[method,status]   one per HTTP call (status is the
                                             HTTP code, "timeout" or "error")
    registry_latency_ms[method]              HTTP call duration
    registry_in_flight                       units holding a throttle slot
    row_outcome_total[operation,status,error]
    row_duration_ms[operation]               duration of one unit of work

Everything is kept in memory; the summary ends up in run reports and in the
"Run metrics" log event.
"""

import math
from abc import ABC, abstractmethod
from collections import Counter, defaultdict, deque
from collections.abc import Iterable
from typing import Any

import structlog

logger = structlog.get_logger(__name__)

# Samples kept per timing key; older ones drop out of avg, min, p95 and max
TIMING_WINDOW = 1000


def _percentile(values: Iterable[float], fraction: float) -> float:
    ordered = sorted(values)
    rank = max(math.ceil(fraction * len(ordered)) - 1, 0)
    return ordered[rank]


class MetricsBackend(ABC):
    """Abstract base class for metrics backends."""

    @abstractmethod
    def increment(self, name: str, value: int = 1, tags: dict[str, str] | None = None) -> None:
        pass

    @abstractmethod
    def gauge(self, name: str, value: float, tags: dict[str, str] | None = None) -> None:
        pass

    @abstractmethod
    def timing(self, name: str, value: float, tags: dict[str, str] | None = None) -> None:
        pass


class LoggerBackend(MetricsBackend):
    """
    In-memory backend whose summary is logged and written to reports.

    Keys are ``name[tag=value,...]`` with tags sorted by name. Timing
    statistics cover the last ``timing_window`` samples of each key while
    ``count`` keeps the total number recorded.
    """

    def __init__(self, timing_window: int = TIMING_WINDOW) -> None:
        self.counters: Counter[str] = Counter()
        self.gauges: dict[str, float] = {}
        self.timings: dict[str, deque[float]] = defaultdict(
            lambda: deque(maxlen=timing_window)
        )
        self.timing_counts: Counter[str] = Counter()

    def increment(self, name: str, value: int = 1, tags: dict[str, str] | None = None) -> None:
        self.counters[self._format_key(name, tags)] += value

    def gauge(self, name: str, value: float, tags: dict[str, str] | None = None) -> None:
        self.gauges[self._format_key(name, tags)] = value

    def timing(self, name: str, value: float, tags: dict[str, str] | None = None) -> None:
        key = self._format_key(name, tags)
        self.timings[key].append(value)
        self.timing_counts[key] += 1

    @staticmethod
    def _format_key(name: str, tags: dict[str, str] | None) -> str:
        if not tags:
            return name
        return f"{name}[{','.join(f'{k}={v}' for k, v in sorted(tags.items()))}]"

    def get_summary(self) -> dict[str, Any]:
        """
        Summarize collected metrics.

        Returns:
            dict with counters, gauges and timings (count, avg, min, p95, max)
        """
        timings = {
            key: {
                "count": self.timing_counts[key],
                "avg": sum(values) / len(values),
                "min": min(values),
                "p95": _percentile(values, 0.95),
                "max": max(values),
            }
            for key, values in self.timings.items()
            if values
        }
        return {"counters": dict(self.counters), "gauges": dict(self.gauges), "timings": timings}


class MetricsCollector:
    """Typed entry points over a metrics backend."""

    def __init__(self, backend: str = "logger") -> None:
        """
        Initialize Metrics Collector.

        Args:
            backend: Backend type to use. Only "logger" is supported.
        """
        if backend != "logger":
            logger.warning("Unknown metrics backend, defaulting to logger", backend=backend)
        self.backend: MetricsBackend = LoggerBackend()

    def record_request(self, method: str, status: str, duration_ms: float) -> None:
        """Record one HTTP call to the registry."""
        self.backend.increment(
            "registry_requests_total", tags={"method": method, "status": status}
        )
        self.backend.timing("registry_latency_ms", duration_ms, tags={"method": method})

    def count_outcome(
        self, operation_kind: str, status: str, error_kind: str | None = None
    ) -> None:
        """Record a row outcome."""
        tags = {"operation": operation_kind, "status": status}
        if error_kind:
            tags["error"] = error_kind
        self.backend.increment("row_outcome_total", tags=tags)

    def record_latency(self, operation_kind: str, duration_ms: float) -> None:
        """Record the duration of one unit of registry work."""
        self.backend.timing("row_duration_ms", duration_ms, tags={"operation": operation_kind})

    def update_in_flight(self, in_flight: int) -> None:
        self.backend.gauge("registry_in_flight", float(in_flight))

    def get_summary(self) -> dict[str, Any]:
        if isinstance(self.backend, LoggerBackend):
            return self.backend.get_summary()
        return {}

    def log_summary(self, **context: Any) -> None:
        """Emit the summary as a single structured event."""
        summary = self.get_summary()
        logger.info(
            "Run metrics",
            requests=sum(
                v
                for k, v in summary.get("counters", {}).items()
                if k.startswith("registry_requests_total")
            ),
            counters=summary.get("counters", {}),
            timings=summary.get("timings", {}),
            **context,
        )


_GLOBAL_COLLECTOR: MetricsCollector | None = None


def get_global_collector() -> MetricsCollector:
    """Get or create the global metrics collector."""
    global _GLOBAL_COLLECTOR
    if _GLOBAL_COLLECTOR is None:
        _GLOBAL_COLLECTOR = MetricsCollector()
    return _GLOBAL_COLLECTOR


def reset_global_collector() -> None:
    """Drop the global collector so the next call starts from zero."""
    global _GLOBAL_COLLECTOR
    _GLOBAL_COLLECTOR = None
