"""A small in-process metrics SDK with a manually collected exporter."""

from __future__ import annotations

import bisect
import enum
import struct
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Mapping


class AggregationKind(enum.Enum):
    SUM = "Sum"
    HISTOGRAM = "Histogram"
    LAST_VALUE = "Lastvalue"

    def __str__(self) -> str:
        return self.value


class NumberKind(enum.Enum):
    INT64 = "Int64Kind"
    FLOAT64 = "Float64Kind"


class Temporality(enum.Enum):
    CUMULATIVE = "cumulative"
    DELTA = "delta"


class RecordNotFoundError(LookupError):
    """No collected record matches the query."""

    def __init__(self) -> None:
        super().__init__("record not found")


@dataclass
class Buckets:
    """Histogram buckets: ``counts`` has one entry per boundary, plus overflow."""

    boundaries: list[float] = field(default_factory=list)
    counts: list[int] = field(default_factory=list)


@dataclass(frozen=True)
class Library:
    instrumentation_name: str = ""
    instrumentation_version: str = ""
    schema_url: str = ""


Attributes = tuple[tuple[str, Any], ...]


def _attrs_key(attributes: Mapping[str, Any] | Iterable[tuple[str, Any]] | None) -> Attributes:
    if attributes is None:
        return ()
    items = attributes.items() if isinstance(attributes, Mapping) else attributes
    return tuple(sorted(dict(items).items()))


def _format_value(value: Any) -> str:
    if isinstance(value, float):
        text = repr(value)
        return text[:-2] if text.endswith(".0") else text
    return str(value)


def _format_number(value: Any, kind: NumberKind) -> str:
    if kind is NumberKind.FLOAT64:
        return str(struct.unpack("<q", struct.pack("<d", float(value)))[0])
    return str(int(value))


@dataclass
class ExportRecord:
    """One collected data point."""

    instrument_name: str = ""
    instrumentation_library: Library = field(default_factory=Library)
    attributes: Attributes = ()
    aggregation_kind: AggregationKind | None = None
    number_kind: NumberKind = NumberKind.INT64
    sum: int | float = 0
    count: int = 0
    histogram: Buckets = field(default_factory=Buckets)
    last_value: int | float = 0
    unit: str = ""

    def __str__(self) -> str:
        kind = self.aggregation_kind
        if kind is AggregationKind.SUM:
            value = _format_number(self.sum, self.number_kind)
        elif kind is AggregationKind.HISTOGRAM:
            value = "".join(
                f"[~{_format_value(b)}]:{c} "
                for b, c in zip(self.histogram.boundaries, self.histogram.counts)
            )
        elif kind is AggregationKind.LAST_VALUE:
            value = _format_number(self.last_value, self.number_kind)
        else:
            return "not supported"
        return (
            f"instrument server:{self.instrumentation_library.instrumentation_name}, "
            f"metric name:{self.instrument_name}, aggregation:{kind}, "
            f"unit:{self.unit}, value:{value}"
        )


class _Instrument:
    aggregation: AggregationKind

    def __init__(self, name: str, description: str, unit: str, number_kind: NumberKind) -> None:
        self.name = name
        self.description = description
        self.unit = unit
        self.number_kind = number_kind
        self._lock = threading.Lock()
        self._data: dict[Attributes, Any] = {}
        self._dirty: set[Attributes] = set()

    def _convert(self, value: int | float) -> int | float:
        return float(value) if self.number_kind is NumberKind.FLOAT64 else int(value)

    def _snapshot(self, delta: bool) -> list[tuple[Attributes, Any]]:
        with self._lock:
            if delta:
                items = [(k, self._data[k]) for k in self._data if k in self._dirty]
                self._data = {}
            else:
                items = list(self._data.items())
            self._dirty.clear()
            return items


class Counter(_Instrument):
    """A synchronous sum instrument; monotonic unless created as up-down."""

    aggregation = AggregationKind.SUM

    def __init__(self, name, description, unit, number_kind, monotonic=True) -> None:
        super().__init__(name, description, unit, number_kind)
        self.monotonic = monotonic

    def add(self, value, attributes=None) -> None:
        if self.monotonic and value < 0:
            raise ValueError(f"counter {self.name} cannot decrease")
        key = _attrs_key(attributes)
        with self._lock:
            self._data[key] = self._data.get(key, self._convert(0)) + self._convert(value)
            self._dirty.add(key)


@dataclass
class _HistogramState:
    counts: list[int]
    sum: int | float
    count: int = 0


class Histogram(_Instrument):
    """A synchronous histogram over fixed bucket boundaries."""

    aggregation = AggregationKind.HISTOGRAM

    def __init__(self, name, description, unit, number_kind, boundaries) -> None:
        super().__init__(name, description, unit, number_kind)
        self.boundaries = list(boundaries)

    def record(self, value, attributes=None) -> None:
        key = _attrs_key(attributes)
        value = self._convert(value)
        with self._lock:
            state = self._data.get(key)
            if state is None:
                state = _HistogramState([0] * (len(self.boundaries) + 1), self._convert(0))
                self._data[key] = state
            state.counts[bisect.bisect_right(self.boundaries, value)] += 1
            state.sum += value
            state.count += 1
            self._dirty.add(key)


class Gauge(_Instrument):
    """An asynchronous instrument: holds the last observed value per attribute set."""

    def __init__(self, name, description, unit, number_kind, aggregation) -> None:
        super().__init__(name, description, unit, number_kind)
        self.aggregation = aggregation

    def observe(self, value, attributes=None) -> None:
        key = _attrs_key(attributes)
        with self._lock:
            self._data[key] = self._convert(value)
            self._dirty.add(key)

    def _snapshot(self, delta: bool) -> list[tuple[Attributes, Any]]:
        with self._lock:
            self._dirty.clear()
            return list(self._data.items())


class Meter:
    """Creates instruments for one instrumentation library."""

    def __init__(self, library: Library, boundaries: list[float]) -> None:
        self.library = library
        self._boundaries = boundaries
        self._lock = threading.Lock()
        self._instruments: list[_Instrument] = []
        self._callbacks: list[Callable[[], None]] = []

    def _add(self, instrument):
        with self._lock:
            self._instruments.append(instrument)
        return instrument

    def counter(self, name, description="", unit="", number_kind=NumberKind.INT64) -> Counter:
        return self._add(Counter(name, description, unit, number_kind))

    def up_down_counter(self, name, description="", unit="", number_kind=NumberKind.INT64) -> Counter:
        return self._add(Counter(name, description, unit, number_kind, monotonic=False))

    def histogram(self, name, description="", unit="", number_kind=NumberKind.INT64) -> Histogram:
        return self._add(Histogram(name, description, unit, number_kind, self._boundaries))

    def gauge(self, name, description="", unit="", number_kind=NumberKind.INT64) -> Gauge:
        return self._add(Gauge(name, description, unit, number_kind, AggregationKind.LAST_VALUE))

    def async_counter(self, name, description="", unit="", number_kind=NumberKind.INT64) -> Gauge:
        return self._add(Gauge(name, description, unit, number_kind, AggregationKind.SUM))

    def async_up_down_counter(self, name, description="", unit="", number_kind=NumberKind.INT64) -> Gauge:
        return self._add(Gauge(name, description, unit, number_kind, AggregationKind.SUM))

    def register_callback(self, instruments, callback) -> None:
        """Run ``callback`` on every collection to observe ``instruments``."""
        for inst in instruments:
            if not isinstance(inst, Gauge) or inst not in self._instruments:
                raise ValueError("callback instruments must be asynchronous instruments of this meter")
        with self._lock:
            self._callbacks.append(callback)


class MeterProvider:
    """Hands out one meter per instrumentation name."""

    def __init__(self, boundaries: list[float]) -> None:
        self._boundaries = boundaries
        self._lock = threading.Lock()
        self._meters: dict[str, Meter] = {}

    def meter(self, name) -> Meter:
        with self._lock:
            if name not in self._meters:
                self._meters[name] = Meter(Library(name), self._boundaries)
            return self._meters[name]

    def _all_meters(self) -> list[Meter]:
        with self._lock:
            return list(self._meters.values())


class Exporter:
    """Collects records from a provider on demand."""

    def __init__(self, provider: MeterProvider, temporality: Temporality) -> None:
        self._provider = provider
        self._temporality = temporality
        self._lock = threading.RLock()
        self._records: list[ExportRecord] = []

    def collect(self) -> None:
        """Gather all instruments into records, replacing earlier ones."""
        delta = self._temporality is Temporality.DELTA
        with self._lock:
            self._records = []
            for meter in self._provider._all_meters():
                with meter._lock:
                    callbacks = list(meter._callbacks)
                    instruments = list(meter._instruments)
                for callback in callbacks:
                    callback()
                for inst in instruments:
                    for attrs, data in inst._snapshot(delta):
                        self._records.append(self._make_record(meter.library, inst, attrs, data))

    @staticmethod
    def _make_record(library, inst, attrs, data) -> ExportRecord:
        rec = ExportRecord(
            instrument_name=inst.name,
            instrumentation_library=library,
            attributes=attrs,
            aggregation_kind=inst.aggregation,
            number_kind=inst.number_kind,
            unit=inst.unit,
        )
        if inst.aggregation is AggregationKind.HISTOGRAM:
            rec.histogram = Buckets(list(inst.boundaries), list(data.counts))
            rec.sum = data.sum
            rec.count = data.count
        elif inst.aggregation is AggregationKind.LAST_VALUE:
            rec.last_value = data
        else:
            rec.sum = data
        return rec

    def get_records(self) -> list[ExportRecord]:
        with self._lock:
            return list(self._records)

    def get_by_name(self, name) -> ExportRecord:
        with self._lock:
            for rec in self._records:
                if rec.instrument_name == name:
                    return rec
        raise RecordNotFoundError()

    def get_by_name_and_attributes(self, name, attributes) -> ExportRecord:
        """Return the first record named ``name`` whose attributes include ``attributes``."""
        wanted = _attrs_key(attributes)
        with self._lock:
            for rec in self._records:
                have = dict(rec.attributes)
                if rec.instrument_name == name and all(
                    k in have and have[k] == v for k, v in wanted
                ):
                    return rec
        raise RecordNotFoundError()


def new_meter_provider(temporality=None, boundaries=None) -> tuple[MeterProvider, Exporter]:
    """Create a provider and its exporter; cumulative temporality by default."""
    provider = MeterProvider(list(boundaries or []))
    return provider, Exporter(provider, temporality or Temporality.CUMULATIVE)