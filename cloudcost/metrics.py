"""Prometheus-style metric primitives, a registry and the text exposition format."""

from __future__ import annotations

import enum
import math
import threading
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Iterable, Iterator

EXPORTER_NAME = "cloudcost_exporter"
METRIC_PREFIX = "cloudcost"


class MetricType(str, enum.Enum):
    """Kind of a metric family as written in the exposition format."""

    GAUGE = "gauge"
    COUNTER = "counter"


def build_fq_name(namespace: str, subsystem: str, name: str) -> str:
    """Join the non-empty parts with underscores; an empty name gives an empty result."""
    if not name:
        return ""
    return "_".join(part for part in (namespace, subsystem, name) if part)


@dataclass(frozen=True)
class Desc:
    """Describes a metric family: its name, help text, label names and type."""

    fq_name: str
    help: str
    variable_labels: tuple[str, ...] = ()
    metric_type: MetricType = MetricType.GAUGE

    def __post_init__(self) -> None:
        labels = tuple(self.variable_labels)
        object.__setattr__(self, "variable_labels", labels)
        if not self.fq_name:
            raise ValueError("metric name must not be empty")
        if len(set(labels)) != len(labels):
            raise ValueError(f"duplicate label names in {self.fq_name}: {labels}")

    def __str__(self) -> str:
        labels = ", ".join(self.variable_labels)
        return (
            f'Desc{{fqName: "{self.fq_name}", help: "{self.help}", '
            f"constLabels: {{}}, variableLabels: {{{labels}}}}}"
        )


@dataclass(frozen=True)
class Sample:
    """A single observed value of a metric with its label values."""

    desc: Desc
    value: float
    label_values: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        values = tuple(str(v) for v in self.label_values)
        if len(values) != len(self.desc.variable_labels):
            raise ValueError(
                f"{self.desc.fq_name}: expected {len(self.desc.variable_labels)} "
                f"label values, got {len(values)}"
            )
        object.__setattr__(self, "label_values", values)
        object.__setattr__(self, "value", float(self.value))

    @property
    def name(self) -> str:
        return self.desc.fq_name

    @property
    def labels(self) -> dict[str, str]:
        return dict(zip(self.desc.variable_labels, self.label_values))


class _Scalar:
    """Shared state of a single gauge or counter value."""

    _type = MetricType.GAUGE

    def __init__(self, name: str, documentation: str) -> None:
        self._bind(Desc(name, documentation, (), self._type), ())

    @classmethod
    def _child(cls, desc: Desc, label_values: tuple[str, ...]) -> Any:
        obj = cls.__new__(cls)
        obj._bind(desc, label_values)
        return obj

    def _bind(self, desc: Desc, label_values: tuple[str, ...]) -> None:
        self.desc = desc
        self._label_values = label_values
        self._value = 0.0
        self._lock = threading.Lock()

    @property
    def value(self) -> float:
        with self._lock:
            return self._value

    def _sample(self) -> Sample:
        return Sample(self.desc, self.value, self._label_values)


class Gauge(_Scalar):
    """A value that can go up and down."""

    _type = MetricType.GAUGE

    def set(self, value: float) -> None:
        with self._lock:
            self._value = float(value)

    def collect(self) -> Iterator[Sample]:
        yield self._sample()


class Counter(_Scalar):
    """A value that only increases."""

    _type = MetricType.COUNTER

    def inc(self, amount: float = 1.0) -> None:
        if amount < 0:
            raise ValueError("counter cannot decrease in value")
        with self._lock:
            self._value += amount

    def collect(self) -> Iterator[Sample]:
        yield self._sample()


class _Vec:
    """A family of child metrics keyed by label values."""

    _child_cls: type[_Scalar] = Gauge

    def __init__(self, name: str, documentation: str, label_names: Iterable[str]) -> None:
        self.desc = Desc(name, documentation, tuple(label_names), self._child_cls._type)
        self._children: dict[tuple[str, ...], _Scalar] = {}
        self._lock = threading.Lock()

    def _labels(self, values: tuple[Any, ...]) -> Any:
        key = tuple(str(v) for v in values)
        if len(key) != len(self.desc.variable_labels):
            raise ValueError(
                f"{self.desc.fq_name}: expected {len(self.desc.variable_labels)} "
                f"label values, got {len(key)}"
            )
        with self._lock:
            child = self._children.get(key)
            if child is None:
                child = self._child_cls._child(self.desc, key)
                self._children[key] = child
            return child

    def _collect(self) -> Iterator[Sample]:
        with self._lock:
            children = list(self._children.values())
        for child in children:
            yield child._sample()


class GaugeVec(_Vec):
    """Gauges partitioned by label values."""

    _child_cls = Gauge

    def labels(self, *args: Any) -> Gauge:
        return self._labels(args)

    def collect(self) -> Iterator[Sample]:
        return self._collect()


class CounterVec(_Vec):
    """Counters partitioned by label values."""

    _child_cls = Counter

    def labels(self, *args: Any) -> Counter:
        return self._labels(args)

    def collect(self) -> Iterator[Sample]:
        return self._collect()


class Registry:
    """Holds collectors: any object with a collect() method yielding samples."""

    def __init__(self) -> None:
        self._collectors: list[Any] = []
        self._names: set[str] = set()
        self._lock = threading.Lock()

    def register(self, *args: Any) -> None:
        with self._lock:
            for collector in args:
                if any(collector is known for known in self._collectors):
                    raise ValueError("duplicate metrics collector registration attempted")
                desc = getattr(collector, "desc", None)
                if isinstance(desc, Desc):
                    if desc.fq_name in self._names:
                        raise ValueError(f"metric {desc.fq_name} is already registered")
                    self._names.add(desc.fq_name)
                self._collectors.append(collector)

    def collect(self) -> Iterator[Sample]:
        with self._lock:
            collectors = list(self._collectors)
        for collector in collectors:
            yield from collector.collect()


def _format_value(value: float) -> str:
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "+Inf" if value > 0 else "-Inf"
    if value == 0:
        return "0"
    sign, digits, exponent = Decimal(repr(value)).as_tuple()
    point = len(digits) + exponent
    text = "".join(str(d) for d in digits).rstrip("0") or "0"
    exp = point - 1
    prefix = "-" if sign else ""
    if exp < -4 or exp >= 6:
        mantissa = text[0] + ("." + text[1:] if len(text) > 1 else "")
        return f"{prefix}{mantissa}e{'+' if exp >= 0 else '-'}{abs(exp):02d}"
    if point <= 0:
        return f"{prefix}0.{'0' * -point}{text}"
    if point >= len(text):
        return prefix + text + "0" * (point - len(text))
    return f"{prefix}{text[:point]}.{text[point:]}"


def _escape_help(text: str) -> str:
    return text.replace("\\", "\\\\").replace("\n", "\\n")


def _escape_label(text: str) -> str:
    return text.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")


def _format_labels(sample: Sample) -> str:
    pairs = sorted(sample.labels.items())
    if not pairs:
        return ""
    return "{" + ",".join(f'{k}="{_escape_label(v)}"' for k, v in pairs) + "}"


def exposition(registry: Registry, *args: str) -> str:
    """Render the registry in the text format, optionally limited to the named families."""
    wanted = set(args)
    families: dict[str, tuple[Desc, list[Sample]]] = {}
    for sample in registry.collect():
        if wanted and sample.name not in wanted:
            continue
        families.setdefault(sample.name, (sample.desc, []))[1].append(sample)

    lines: list[str] = []
    for name in sorted(families):
        desc, samples = families[name]
        lines.append(f"# HELP {name} {_escape_help(desc.help)}")
        lines.append(f"# TYPE {name} {desc.metric_type.value}")
        for sample in sorted(samples, key=lambda s: tuple(sorted(s.labels.items()))):
            lines.append(f"{name}{_format_labels(sample)} {_format_value(sample.value)}")
    return "".join(line + "\n" for line in lines)