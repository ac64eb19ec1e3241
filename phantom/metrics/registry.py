"""In-process metrics (counters, gauges, histograms) and a text-format registry."""

from __future__ import annotations

import bisect
import math
import re
import threading
from dataclasses import dataclass
from typing import (
    Dict,
    Iterable,
    List,
    NamedTuple,
    Optional,
    Protocol,
    Sequence,
    Tuple,
    runtime_checkable,
)

DEFAULT_BUCKETS: Tuple[float, ...] = (
    0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0,
)

_NAME_RE = re.compile(r"^[a-zA-Z_:][a-zA-Z0-9_:]*$")
_LABEL_RE = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$")
_HISTOGRAM_SUFFIXES = ("_bucket", "_sum", "_count")


class RegistrationError(ValueError):
    """Raised when a collector cannot be added to a registry."""


class Sample(NamedTuple):
    """One exposed value."""

    name: str
    labels: Dict[str, str]
    value: float


@dataclass(frozen=True)
class Desc:
    """Describes a metric family: its name, help text, label names and type."""

    fq_name: str
    help: str
    variable_labels: Tuple[str, ...] = ()
    kind: str = "untyped"

    def __post_init__(self) -> None:
        if not _NAME_RE.match(self.fq_name):
            raise ValueError(f"invalid metric name: {self.fq_name!r}")
        for label in self.variable_labels:
            if not _LABEL_RE.match(label) or label.startswith("__"):
                raise ValueError(f"invalid label name: {label!r}")
        if len(set(self.variable_labels)) != len(self.variable_labels):
            raise ValueError(f"duplicate label names in {self.fq_name}")


@runtime_checkable
class Collector(Protocol):
    """Anything that can be registered: describes its families and yields samples."""

    def describe(self) -> Iterable[Desc]: ...

    def collect(self) -> Iterable[Sample]: ...


def build_fq_name(namespace: str, subsystem: str, name: str) -> str:
    """Join the non-empty parts with ``_``; an empty ``name`` gives an empty string."""
    if not name:
        return ""
    return "_".join(part for part in (namespace, subsystem, name) if part)


class _Metric:
    kind = "untyped"

    def __init__(self, name: str, help: str, *, namespace: str = "", subsystem: str = ""):
        self.desc = Desc(build_fq_name(namespace, subsystem, name), help, (), self.kind)
        self._lock = threading.Lock()

    def describe(self) -> List[Desc]:
        return [self.desc]

    def collect(self) -> List[Sample]:
        return self._samples({})

    def _samples(self, labels: Dict[str, str]) -> List[Sample]:
        raise NotImplementedError


class Counter(_Metric):
    """A value that only goes up."""

    kind = "counter"

    def __init__(self, name: str, help: str, *, namespace: str = "", subsystem: str = ""):
        super().__init__(name, help, namespace=namespace, subsystem=subsystem)
        self._value = 0.0

    @property
    def value(self) -> float:
        with self._lock:
            return self._value

    def inc(self, amount: float = 1.0) -> None:
        """Add ``amount``; negative amounts raise ValueError."""
        if amount < 0:
            raise ValueError("counter cannot decrease")
        with self._lock:
            self._value += amount

    def collect(self) -> List[Sample]:
        return self._samples({})

    def _samples(self, labels: Dict[str, str]) -> List[Sample]:
        return [Sample(self.desc.fq_name, dict(labels), self.value)]


class Gauge(_Metric):
    """A value that can go up and down."""

    kind = "gauge"

    def __init__(self, name: str, help: str, *, namespace: str = "", subsystem: str = ""):
        super().__init__(name, help, namespace=namespace, subsystem=subsystem)
        self._value = 0.0

    @property
    def value(self) -> float:
        with self._lock:
            return self._value

    def set(self, value: float) -> None:
        with self._lock:
            self._value = float(value)

    def inc(self, amount: float = 1.0) -> None:
        with self._lock:
            self._value += amount

    def dec(self, amount: float = 1.0) -> None:
        with self._lock:
            self._value -= amount

    def collect(self) -> List[Sample]:
        return self._samples({})

    def _samples(self, labels: Dict[str, str]) -> List[Sample]:
        return [Sample(self.desc.fq_name, dict(labels), self.value)]


def _check_buckets(buckets: Optional[Sequence[float]]) -> Tuple[float, ...]:
    bounds = [float(b) for b in (DEFAULT_BUCKETS if buckets is None else buckets)]
    if bounds and math.isinf(bounds[-1]) and bounds[-1] > 0:
        bounds.pop()
    if any(a >= b for a, b in zip(bounds, bounds[1:])):
        raise ValueError("histogram buckets must be strictly increasing")
    return tuple(bounds)


class Histogram(_Metric):
    """Counts observations into cumulative buckets."""

    kind = "histogram"

    def __init__(
        self,
        name: str,
        help: str,
        *,
        namespace: str = "",
        subsystem: str = "",
        buckets: Optional[Sequence[float]] = None,
    ):
        super().__init__(name, help, namespace=namespace, subsystem=subsystem)
        self.buckets = _check_buckets(buckets)
        self._counts = [0] * (len(self.buckets) + 1)
        self._sum = 0.0
        self._count = 0

    @property
    def count(self) -> int:
        with self._lock:
            return self._count

    @property
    def sum(self) -> float:
        with self._lock:
            return self._sum

    def observe(self, value: float) -> None:
        index = bisect.bisect_left(self.buckets, value)
        with self._lock:
            self._counts[index] += 1
            self._sum += value
            self._count += 1

    def collect(self) -> List[Sample]:
        return self._samples({})

    def _samples(self, labels: Dict[str, str]) -> List[Sample]:
        name = self.desc.fq_name
        with self._lock:
            counts = list(self._counts)
            total, count = self._sum, self._count
        samples = []
        cumulative = 0
        bounds = [_format_value(b) for b in self.buckets] + ["+Inf"]
        for bound, n in zip(bounds, counts):
            cumulative += n
            samples.append(Sample(f"{name}_bucket", {**labels, "le": bound}, float(cumulative)))
        samples.append(Sample(f"{name}_sum", dict(labels), total))
        samples.append(Sample(f"{name}_count", dict(labels), float(count)))
        return samples


class _Vec:
    kind = "untyped"

    def __init__(
        self,
        name: str,
        help: str,
        label_names: Sequence[str],
        *,
        namespace: str = "",
        subsystem: str = "",
    ):
        self.desc = Desc(build_fq_name(namespace, subsystem, name), help, tuple(label_names), self.kind)
        self._children: Dict[Tuple[str, ...], _Metric] = {}
        self._lock = threading.Lock()

    def _make_child(self) -> _Metric:
        raise NotImplementedError

    def _child(self, args: Tuple[object, ...]):
        names = self.desc.variable_labels
        if len(args) != len(names):
            raise ValueError(
                f"{self.desc.fq_name} expects {len(names)} label values, got {len(args)}"
            )
        key = tuple(str(a) for a in args)
        with self._lock:
            child = self._children.get(key)
            if child is None:
                child = self._children[key] = self._make_child()
        return child

    def describe(self) -> List[Desc]:
        return [self.desc]

    def collect(self) -> List[Sample]:
        with self._lock:
            children = list(self._children.items())
        names = self.desc.variable_labels
        samples: List[Sample] = []
        for key, child in children:
            samples.extend(child._samples(dict(zip(names, key))))
        return samples


class CounterVec(_Vec):
    """Counters partitioned by label values."""

    kind = "counter"

    def _make_child(self) -> Counter:
        return Counter(self.desc.fq_name, self.desc.help)

    def labels(self, *args) -> Counter:
        return self._child(args)

    def collect(self) -> List[Sample]:
        return super().collect()


class GaugeVec(_Vec):
    """Gauges partitioned by label values."""

    kind = "gauge"

    def _make_child(self) -> Gauge:
        return Gauge(self.desc.fq_name, self.desc.help)

    def labels(self, *args) -> Gauge:
        return self._child(args)

    def collect(self) -> List[Sample]:
        return super().collect()


class HistogramVec(_Vec):
    """Histograms partitioned by label values."""

    kind = "histogram"

    def __init__(
        self,
        name: str,
        help: str,
        label_names: Sequence[str],
        *,
        namespace: str = "",
        subsystem: str = "",
        buckets: Optional[Sequence[float]] = None,
    ):
        if "le" in label_names:
            raise ValueError("'le' is reserved for histogram buckets")
        super().__init__(name, help, label_names, namespace=namespace, subsystem=subsystem)
        self.buckets = _check_buckets(buckets)

    def _make_child(self) -> Histogram:
        return Histogram(self.desc.fq_name, self.desc.help, buckets=self.buckets)

    def labels(self, *args) -> Histogram:
        return self._child(args)

    def collect(self) -> List[Sample]:
        return super().collect()


def _format_value(value: float) -> str:
    value = float(value)
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "+Inf" if value > 0 else "-Inf"
    if value.is_integer() and abs(value) < 1e15:
        return str(int(value))
    return repr(value)


def _escape_label(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')


def _escape_help(text: str) -> str:
    return text.replace("\\", "\\\\").replace("\n", "\\n")


def _belongs(sample: Sample, desc: Desc) -> bool:
    if desc.kind == "histogram":
        return sample.name in {desc.fq_name + s for s in _HISTOGRAM_SUFFIXES}
    return sample.name == desc.fq_name


class Registry:
    """Holds collectors and renders their samples in the text exposition format."""

    def __init__(self) -> None:
        self._collectors: List[Collector] = []
        self._names: set = set()
        self._lock = threading.Lock()

    def register(self, collector: Collector) -> None:
        """Add ``collector``; a family name already taken raises RegistrationError."""
        names = [desc.fq_name for desc in collector.describe()]
        with self._lock:
            if any(c is collector for c in self._collectors):
                raise RegistrationError("collector already registered")
            if len(set(names)) != len(names):
                raise RegistrationError("collector describes a family twice")
            taken = self._names.intersection(names)
            if taken:
                raise RegistrationError(f"already registered: {', '.join(sorted(taken))}")
            self._collectors.append(collector)
            self._names.update(names)

    def collect(self) -> List[Sample]:
        """Gather the samples of every registered collector."""
        with self._lock:
            collectors = list(self._collectors)
        samples: List[Sample] = []
        for collector in collectors:
            samples.extend(collector.collect())
        return samples

    def expose(self) -> str:
        """Render all families with HELP and TYPE lines."""
        with self._lock:
            collectors = list(self._collectors)
        lines: List[str] = []
        for collector in collectors:
            descs = list(collector.describe())
            samples = list(collector.collect())
            for desc in descs:
                lines.append(f"# HELP {desc.fq_name} {_escape_help(desc.help)}")
                lines.append(f"# TYPE {desc.fq_name} {desc.kind}")
                for sample in samples:
                    if not _belongs(sample, desc):
                        continue
                    if sample.labels:
                        labels = ",".join(
                            f'{k}="{_escape_label(str(v))}"' for k, v in sample.labels.items()
                        )
                        lines.append(f"{sample.name}{{{labels}}} {_format_value(sample.value)}")
                    else:
                        lines.append(f"{sample.name} {_format_value(sample.value)}")
        return "\n".join(lines) + "\n" if lines else ""