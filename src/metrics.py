"""In-process metrics for the ordering core.

Counters, gauges and histograms modelled on Prometheus, kept in a global
registry and exportable in the Prometheus text exposition format through
:func:`generate_metrics_text`.  The CLI prints that text on demand; no
HTTP exporter is bundled.
"""

from collections import defaultdict
from threading import Lock
from typing import Dict, Iterable, List, Tuple


class Metric:
    """Base class for all metrics."""

    def __init__(self, name: str, description: str, label_names: Iterable[str]):
        self.name = name
        self.description = description
        self.label_names = list(label_names)
        self._lock = Lock()
        _METRIC_REGISTRY.append(self)

    def _label_tuple(self, labels: Dict[str, str]) -> Tuple[str, ...]:
        return tuple(str(labels.get(k, "")) for k in self.label_names)

    def _format_labels(self, label_values: Tuple[str, ...], extra: str = "") -> str:
        pairs = [f'{name}="{value}"' for name, value in zip(self.label_names, label_values)]
        if extra:
            pairs.append(extra)
        return "{" + ",".join(pairs) + "}" if pairs else ""

    def reset(self) -> None:
        raise NotImplementedError

    def to_prometheus(self) -> List[str]:
        """Return a list of strings in Prometheus exposition format."""
        raise NotImplementedError


class Counter(Metric):
    """Monotonic counter.

    ``ORDERS_CREATED_TOTAL.inc()`` or, with labels,
    ``ORDER_ERRORS_TOTAL.inc(operation="create", type="insufficient_stock")``.
    """

    def __init__(self, name: str, description: str, label_names: Iterable[str] = ()):
        super().__init__(name, description, label_names)
        self._values: Dict[Tuple[str, ...], float] = defaultdict(float)

    def inc(self, amount: float = 1.0, **labels: str) -> None:
        if amount < 0:
            raise ValueError("Counters can only increase")
        key = self._label_tuple(labels)
        with self._lock:
            self._values[key] += amount

    def get(self, **labels: str) -> float:
        with self._lock:
            return self._values.get(self._label_tuple(labels), 0.0)

    def reset(self) -> None:
        with self._lock:
            self._values.clear()

    def to_prometheus(self) -> List[str]:
        lines = [f"# HELP {self.name} {self.description}", f"# TYPE {self.name} counter"]
        with self._lock:
            for label_values, value in self._values.items():
                lines.append(f"{self.name}{self._format_labels(label_values)} {value}")
        return lines


class Histogram(Metric):
    """Histogram with fixed ascending bucket bounds.

    Observations above the largest bound only count towards ``+Inf``.
    """

    def __init__(
        self,
        name: str,
        description: str,
        label_names: Iterable[str] = (),
        buckets: Iterable[float] = (0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0),
    ):
        super().__init__(name, description, label_names)
        self.buckets = sorted(float(b) for b in buckets)
        # counts[labels][i] = observations <= buckets[i]
        self.counts: Dict[Tuple[str, ...], List[int]] = defaultdict(lambda: [0] * len(self.buckets))
        self.sums: Dict[Tuple[str, ...], float] = defaultdict(float)
        self.total_counts: Dict[Tuple[str, ...], int] = defaultdict(int)

    def observe(self, value: float, **labels: str) -> None:
        key = self._label_tuple(labels)
        with self._lock:
            for idx, upper in enumerate(self.buckets):
                if value <= upper:
                    self.counts[key][idx] += 1
            self.total_counts[key] += 1
            self.sums[key] += float(value)

    def count(self, **labels: str) -> int:
        with self._lock:
            return self.total_counts.get(self._label_tuple(labels), 0)

    def reset(self) -> None:
        with self._lock:
            self.counts.clear()
            self.sums.clear()
            self.total_counts.clear()

    def to_prometheus(self) -> List[str]:
        lines = [f"# HELP {self.name} {self.description}", f"# TYPE {self.name} histogram"]
        with self._lock:
            for label_values, total in self.total_counts.items():
                # counts are already cumulative: each observation hits every bound >= value
                for idx, upper in enumerate(self.buckets):
                    bucket_labels = self._format_labels(label_values, f'le="{upper}"')
                    lines.append(f"{self.name}_bucket{bucket_labels} {self.counts[label_values][idx]}")
                inf_labels = self._format_labels(label_values, 'le="+Inf"')
                lines.append(f"{self.name}_bucket{inf_labels} {total}")
                label_str = self._format_labels(label_values)
                lines.append(f"{self.name}_sum{label_str} {self.sums[label_values]}")
                lines.append(f"{self.name}_count{label_str} {total}")
        return lines


_METRIC_REGISTRY: List[Metric] = []


def generate_metrics_text() -> bytes:
    """Generate the text representation of all registered metrics."""
    lines: List[str] = []
    for metric in _METRIC_REGISTRY:
        lines.extend(metric.to_prometheus())
    return "\n".join(lines).encode("utf-8")


def reset_all() -> None:
    for metric in _METRIC_REGISTRY:
        metric.reset()


# -----------------------------------------------------------------------------
# Metrics recorded by the order engine (see app.py).
# -----------------------------------------------------------------------------

ORDERS_CREATED_TOTAL = Counter(
    name="orders_created_total",
    description="Total number of orders committed",
)

ORDER_ERRORS_TOTAL = Counter(
    name="order_errors_total",
    description="Failed engine operations, labelled by operation and error type",
    label_names=["operation", "type"],
)

ORDER_CREATE_DURATION_SECONDS = Histogram(
    name="order_create_duration_seconds",
    description="Duration of create_order calls in seconds, successful or not",
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 5.0, 10.0],
)

ORDERS_CANCELLED_TOTAL = Counter(
    name="orders_cancelled_total",
    description="Orders moved to Cancelled (idempotent repeats are not counted)",
)

STOCK_UNITS_RESTORED_TOTAL = Counter(
    name="stock_units_restored_total",
    description="Units returned to stock by cancellations",
)

ORDER_STATUS_TRANSITIONS_TOTAL = Counter(
    name="order_status_transitions_total",
    description="Applied order status transitions",
    label_names=["from_status", "to_status"],
)
