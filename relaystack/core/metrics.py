"""Metrics sink interface and the in-process implementations."""

from collections import defaultdict
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Protocol

# Metric names emitted by the engine
NOTIFICATIONS_TOTAL = "notifications_total"
DELIVERY_DURATION_SECONDS = "delivery_duration_seconds"
EVENTS_EMITTED_TOTAL = "events_emitted_total"
HANDLER_ERRORS_TOTAL = "handler_errors_total"
QUEUE_DEPTH = "queue_depth"
ACTIVE_WORKERS = "active_workers"

LabelKey = tuple[tuple[str, str], ...]


def _label_key(labels: Mapping[str, str] | None) -> LabelKey:
    return tuple(sorted((labels or {}).items()))


class MetricsSink(Protocol):
    """Counter, histogram and gauge hooks. Exporters are out of scope."""

    def increment(
        self, name: str, labels: Mapping[str, str] | None = None, value: float = 1
    ) -> None: ...

    def observe(self, name: str, value: float, labels: Mapping[str, str] | None = None) -> None: ...

    def gauge(self, name: str, value: float, labels: Mapping[str, str] | None = None) -> None: ...


class NullMetrics:
    """Discards everything."""

    def increment(
        self, name: str, labels: Mapping[str, str] | None = None, value: float = 1
    ) -> None:
        pass

    def observe(self, name: str, value: float, labels: Mapping[str, str] | None = None) -> None:
        pass

    def gauge(self, name: str, value: float, labels: Mapping[str, str] | None = None) -> None:
        pass


@dataclass
class InMemoryMetrics:
    """Keeps every sample in dicts, keyed by (name, sorted labels)."""

    counters: dict[tuple[str, LabelKey], float] = field(
        default_factory=lambda: defaultdict(float)
    )
    histograms: dict[tuple[str, LabelKey], list[float]] = field(
        default_factory=lambda: defaultdict(list)
    )
    gauges: dict[tuple[str, LabelKey], float] = field(default_factory=dict)

    def increment(
        self, name: str, labels: Mapping[str, str] | None = None, value: float = 1
    ) -> None:
        self.counters[(name, _label_key(labels))] += value

    def observe(self, name: str, value: float, labels: Mapping[str, str] | None = None) -> None:
        self.histograms[(name, _label_key(labels))].append(value)

    def gauge(self, name: str, value: float, labels: Mapping[str, str] | None = None) -> None:
        self.gauges[(name, _label_key(labels))] = value

    def counter(self, name: str, **labels: str) -> float:
        """Value of one counter series; 0 if never incremented."""
        return self.counters.get((name, _label_key(labels)), 0)

    def total(self, name: str) -> float:
        """Sum of a counter across every label set."""
        return sum(v for (n, _), v in self.counters.items() if n == name)

    def samples(self, name: str, **labels: str) -> list[float]:
        return list(self.histograms.get((name, _label_key(labels)), []))

    def gauge_value(self, name: str, **labels: str) -> float | None:
        return self.gauges.get((name, _label_key(labels)))
