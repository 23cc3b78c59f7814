"""Thread-safe in-process counters and distributions."""
from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from threading import Lock
from typing import Callable, Iterable, Mapping, MutableMapping, Tuple, TypeVar

LabelValues = Tuple[str, ...]


class Metric:
    """Named metric keyed by an ordered tuple of label values."""

    kind = "untyped"

    def __init__(self, name: str, *, description: str = "", label_names: Iterable[str] | None = None) -> None:
        self.name = name
        self.description = description
        self.label_names: Tuple[str, ...] = tuple(label_names or ())
        self._lock = Lock()

    def _key(self, labels: Mapping[str, str] | None) -> LabelValues:
        labels = labels or {}
        unknown = set(labels) - set(self.label_names)
        if unknown:
            raise ValueError(f"Metric '{self.name}' got unexpected labels {sorted(unknown)}")
        missing = [label for label in self.label_names if label not in labels]
        if missing:
            raise ValueError(f"Metric '{self.name}' is missing labels {missing}")
        return tuple(str(labels[label]) for label in self.label_names)

    def snapshot(self) -> Mapping[LabelValues, Mapping[str, float]]:  # pragma: no cover - interface
        raise NotImplementedError


class Counter(Metric):
    """Monotonically increasing counter."""

    kind = "counter"

    def __init__(self, name: str, *, description: str = "", label_names: Iterable[str] | None = None) -> None:
        super().__init__(name, description=description, label_names=label_names)
        self._values: MutableMapping[LabelValues, float] = defaultdict(float)

    def inc(self, amount: float = 1.0, *, labels: Mapping[str, str] | None = None) -> None:
        if amount < 0:
            raise ValueError("Counters can only increase")
        key = self._key(labels)
        with self._lock:
            self._values[key] += amount

    def value(self, *, labels: Mapping[str, str] | None = None) -> float:
        key = self._key(labels)
        with self._lock:
            return self._values.get(key, 0.0)

    def snapshot(self) -> Mapping[LabelValues, Mapping[str, float]]:
        with self._lock:
            return {key: {"value": value} for key, value in self._values.items()}


@dataclass
class _Observations:
    count: int = 0
    total: float = 0.0
    maximum: float = 0.0

    def add(self, value: float) -> None:
        self.count += 1
        self.total += value
        self.maximum = max(self.maximum, value)


class Distribution(Metric):
    """Summary of observed values such as durations."""

    kind = "summary"

    def __init__(self, name: str, *, description: str = "", label_names: Iterable[str] | None = None) -> None:
        super().__init__(name, description=description, label_names=label_names)
        self._values: MutableMapping[LabelValues, _Observations] = defaultdict(_Observations)

    def observe(self, value: float, *, labels: Mapping[str, str] | None = None) -> None:
        key = self._key(labels)
        with self._lock:
            self._values[key].add(value)

    def snapshot(self) -> Mapping[LabelValues, Mapping[str, float]]:
        with self._lock:
            return {
                key: {"count": float(obs.count), "sum": obs.total, "max": obs.maximum}
                for key, obs in self._values.items()
            }


_M = TypeVar("_M", bound=Metric)


class MetricsRegistry:
    """Registry holding metric instances by name."""

    def __init__(self) -> None:
        self._metrics: MutableMapping[str, Metric] = {}
        self._lock = Lock()

    def _get_or_create(self, name: str, metric_type: type[_M], factory: Callable[[], _M]) -> _M:
        with self._lock:
            metric = self._metrics.get(name)
            if metric is None:
                metric = self._metrics[name] = factory()
        if not isinstance(metric, metric_type):
            raise TypeError(f"Metric '{name}' already exists with a different type")
        return metric

    def counter(self, name: str, *, description: str = "", label_names: Iterable[str] | None = None) -> Counter:
        return self._get_or_create(
            name, Counter, lambda: Counter(name, description=description, label_names=label_names)
        )

    def distribution(
        self, name: str, *, description: str = "", label_names: Iterable[str] | None = None
    ) -> Distribution:
        return self._get_or_create(
            name, Distribution, lambda: Distribution(name, description=description, label_names=label_names)
        )

    def metrics(self) -> Tuple[Metric, ...]:
        with self._lock:
            return tuple(self._metrics.values())

    def render_prometheus(self) -> str:
        """Render all metrics in the Prometheus text exposition format."""

        lines: list[str] = []
        for metric in self.metrics():
            lines.append(f"# HELP {metric.name} {metric.description}")
            lines.append(f"# TYPE {metric.name} {metric.kind}")
            for labels, values in metric.snapshot().items():
                label_text = ""
                if labels:
                    pairs = ",".join(f'{name}="{value}"' for name, value in zip(metric.label_names, labels))
                    label_text = "{" + pairs + "}"
                if "value" in values:
                    lines.append(f"{metric.name}{label_text} {values['value']}")
                else:
                    lines.append(f"{metric.name}_count{label_text} {values['count']}")
                    lines.append(f"{metric.name}_sum{label_text} {values['sum']}")
        return "\n".join(lines) + "\n"
