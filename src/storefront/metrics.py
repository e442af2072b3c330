"""Prometheus-style metrics built on the standard library.

Counters, gauges and histograms register themselves in a module-level
registry when created; :func:`generate_metrics_text` renders all of them
in the Prometheus text exposition format for the ``/metrics`` endpoint.
Updates are guarded by a per-metric lock since the HTTP server is
threaded.
"""

from collections import defaultdict
from threading import Lock
from typing import Dict, Iterable, List, Sequence, Tuple

LabelKey = Tuple[str, ...]


def _render_labels(names: Sequence[str], values: Sequence[str]) -> str:
    if not names:
        return ""
    pairs = [f'{name}="{value}"' for name, value in zip(names, values)]
    return "{" + ",".join(pairs) + "}"


class Metric:
    """Base class for all metrics."""

    kind = "untyped"

    def __init__(self, name: str, description: str, label_names: Iterable[str] = ()):
        self.name = name
        self.description = description
        self.label_names = list(label_names)
        self._lock = Lock()
        _METRIC_REGISTRY.append(self)

    def _key(self, labels: Dict[str, str]) -> LabelKey:
        return tuple(str(labels.get(k, "")) for k in self.label_names)

    def _header(self) -> List[str]:
        return [f"# HELP {self.name} {self.description}", f"# TYPE {self.name} {self.kind}"]

    def to_prometheus(self) -> List[str]:
        raise NotImplementedError


class Counter(Metric):
    """Monotonic counter.  ``CHECKOUT_OUTCOME_TOTAL.inc(outcome="success")``"""

    kind = "counter"

    def __init__(self, name: str, description: str, label_names: Iterable[str] = ()):
        super().__init__(name, description, label_names)
        self._values: Dict[LabelKey, float] = defaultdict(float)

    def inc(self, amount: float = 1.0, **labels: str) -> None:
        if amount < 0:
            raise ValueError("Counters can only increase")
        with self._lock:
            self._values[self._key(labels)] += amount

    def value(self, **labels: str) -> float:
        with self._lock:
            return self._values.get(self._key(labels), 0.0)

    def to_prometheus(self) -> List[str]:
        lines = self._header()
        with self._lock:
            for key, value in self._values.items():
                lines.append(f"{self.name}{_render_labels(self.label_names, key)} {value}")
        return lines


class Gauge(Metric):
    """Value that may go up and down."""

    kind = "gauge"

    def __init__(self, name: str, description: str, label_names: Iterable[str] = ()):
        super().__init__(name, description, label_names)
        self._values: Dict[LabelKey, float] = {}

    def set(self, value: float, **labels: str) -> None:
        with self._lock:
            self._values[self._key(labels)] = float(value)

    def inc(self, amount: float = 1.0, **labels: str) -> None:
        key = self._key(labels)
        with self._lock:
            self._values[key] = self._values.get(key, 0.0) + amount

    def dec(self, amount: float = 1.0, **labels: str) -> None:
        self.inc(-amount, **labels)

    def value(self, **labels: str) -> float:
        with self._lock:
            return self._values.get(self._key(labels), 0.0)

    def to_prometheus(self) -> List[str]:
        lines = self._header()
        with self._lock:
            for key, value in self._values.items():
                lines.append(f"{self.name}{_render_labels(self.label_names, key)} {value}")
        return lines


class Histogram(Metric):
    """Histogram with fixed upper-bound buckets plus an implicit ``+Inf``."""

    kind = "histogram"

    def __init__(
        self,
        name: str,
        description: str,
        label_names: Iterable[str] = (),
        buckets: Iterable[float] = (0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
    ):
        super().__init__(name, description, label_names)
        self.buckets = sorted(float(b) for b in buckets)
        # Per-bucket (non-cumulative) counts; cumulated when rendering
        self._counts: Dict[LabelKey, List[int]] = defaultdict(lambda: [0] * len(self.buckets))
        self._sums: Dict[LabelKey, float] = defaultdict(float)
        self._totals: Dict[LabelKey, int] = defaultdict(int)

    def observe(self, value: float, **labels: str) -> None:
        key = self._key(labels)
        with self._lock:
            for idx, upper in enumerate(self.buckets):
                if value <= upper:
                    self._counts[key][idx] += 1
                    break
            self._totals[key] += 1
            self._sums[key] += float(value)

    def count(self, **labels: str) -> int:
        with self._lock:
            return self._totals.get(self._key(labels), 0)

    def to_prometheus(self) -> List[str]:
        lines = self._header()
        bucket_names = self.label_names + ["le"]
        with self._lock:
            for key, total in self._totals.items():
                cumulative = 0
                for idx, upper in enumerate(self.buckets):
                    cumulative += self._counts[key][idx]
                    labels = _render_labels(bucket_names, key + (str(upper),))
                    lines.append(f"{self.name}_bucket{labels} {cumulative}")
                labels = _render_labels(bucket_names, key + ("+Inf",))
                lines.append(f"{self.name}_bucket{labels} {total}")
                plain = _render_labels(self.label_names, key)
                lines.append(f"{self.name}_sum{plain} {self._sums[key]}")
                lines.append(f"{self.name}_count{plain} {total}")
        return lines


_METRIC_REGISTRY: List[Metric] = []


def generate_metrics_text() -> bytes:
    """Render every registered metric in the text exposition format."""
    lines: List[str] = []
    for metric in _METRIC_REGISTRY:
        lines.extend(metric.to_prometheus())
    return ("\n".join(lines) + "\n").encode("utf-8")


# -----------------------------------------------------------------------------
# Metrics used by the store service (see app_web.py, checkout.py and dao.py)
# -----------------------------------------------------------------------------

HTTP_REQUESTS_TOTAL = Counter(
    name="http_requests_total",
    description="Total number of HTTP requests",
    label_names=["endpoint", "method", "status"],
)

HTTP_REQUEST_LATENCY_SECONDS = Histogram(
    name="http_request_latency_seconds",
    description="HTTP request latency in seconds",
    label_names=["endpoint"],
    buckets=[0.05, 0.1, 0.2, 0.5, 1.0, 2.0, 5.0, 10.0],
)

CHECKOUT_DURATION_SECONDS = Histogram(
    name="checkout_duration_seconds",
    description="Duration of checkout transactions in seconds",
    buckets=[0.01, 0.05, 0.1, 0.2, 0.5, 1.0, 2.0, 5.0, 10.0],
)

# outcome: success, empty_cart, insufficient_stock, error
CHECKOUT_OUTCOME_TOTAL = Counter(
    name="checkout_outcome_total",
    description="Checkout attempts labelled by outcome",
    label_names=["outcome"],
)

ORDERS_CREATED_TOTAL = Counter(
    name="orders_created_total",
    description="Orders committed by checkout",
)

DB_POOL_IN_USE = Gauge(
    name="db_pool_connections_in_use",
    description="Database connections currently borrowed from the pool",
)
