"""Running one Prometheus query periodically and turning its results into raw events."""

from __future__ import annotations

import enum
import logging
import math
import threading
import time
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Callable, Mapping, Protocol, Sequence

from slokit.events import RawEvent
from slokit.stringmap import StringMap

_log = logging.getLogger(__name__)

METADATA_VALUE_KEY = "prometheusQueryResult"
METADATA_TIMESTAMP_KEY = "unixTimestamp"
METADATA_HISTOGRAM_MIN_VALUE = "prometheusHistogramMinValue"
METADATA_HISTOGRAM_MAX_VALUE = "prometheusHistogramMaxValue"

_FNV_OFFSET = 14695981039346656037
_FNV_PRIME = 1099511628211
_MASK_64 = 2**64 - 1
_LABEL_SEPARATOR = b"\xff"


class QueryType(enum.Enum):
    """How the result of a query is turned into events."""

    SIMPLE = "simple"
    COUNTER_INCREASE = "counter_increase"
    HISTOGRAM_INCREASE = "histogram_increase"

    def __str__(self) -> str:
        return self.value


@dataclass
class QueryOptions:
    """Configuration of a single periodically executed query."""

    query: str = ""
    interval: timedelta = timedelta(0)
    drop_labels: list[str] = field(default_factory=list)
    additional_labels: StringMap = field(default_factory=StringMap)
    type: QueryType = QueryType.SIMPLE
    result_as_quantity: bool | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.type, QueryType):
            try:
                self.type = QueryType(self.type)
            except ValueError:
                valid = [item.value for item in QueryType]
                raise ValueError(
                    f"unknown query type specified: {self.type}, valid types are {valid}"
                ) from None
        if self.result_as_quantity is None:
            self.result_as_quantity = self.type in (
                QueryType.COUNTER_INCREASE,
                QueryType.HISTOGRAM_INCREASE,
            )
        self.drop_labels = list(self.drop_labels or ())
        self.additional_labels = StringMap(self.additional_labels or {})


@dataclass(frozen=True)
class SamplePair:
    """A value at a timestamp given in milliseconds since the epoch."""

    timestamp: int = 0
    value: float = 0.0


@dataclass
class SampleStream:
    """A series of samples of one metric (an element of a matrix result)."""

    metric: Mapping[str, str] = field(default_factory=dict)
    values: list[SamplePair] = field(default_factory=list)


@dataclass
class Sample:
    """A single sample of one metric (an element of a vector result)."""

    metric: Mapping[str, str] = field(default_factory=dict)
    timestamp: int = 0
    value: float = 0.0


@dataclass
class Scalar:
    """A scalar query result."""

    timestamp: int = 0
    value: float = 0.0


@dataclass
class QueryResult:
    """Time of a query execution and the most recent sample of each metric."""

    timestamp: datetime | None = None
    metrics: dict[int, SamplePair] = field(default_factory=dict)


class _QueryApi(Protocol):
    def query(self, query: str, ts: datetime) -> Any: ...


def increase_between_samples(previous: SamplePair, sample: SamplePair) -> float:
    """Increase of a counter between two samples, treating a decrease as a reset."""
    if sample.value < previous.value:
        return float(sample.value)
    return float(sample.value) - float(previous.value)


def fingerprint(metric: Mapping[str, str]) -> int:
    """64-bit FNV-1a hash identifying a label set independently of label order."""
    digest = _FNV_OFFSET
    for name in sorted(metric):
        for chunk in (name.encode(), _LABEL_SEPARATOR, metric[name].encode(), _LABEL_SEPARATOR):
            for byte in chunk:
                digest = ((digest ^ byte) * _FNV_PRIME) & _MASK_64
    return digest


def _format_float(value: float) -> str:
    """Shortest representation of a float using exponent form for large or tiny values."""
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "+Inf" if value > 0 else "-Inf"
    if value == 0:
        return "-0" if math.copysign(1.0, value) < 0 else "0"
    sign, digit_tuple, exponent = Decimal(repr(float(value))).normalize().as_tuple()
    digits = "".join(str(digit) for digit in digit_tuple)
    count = len(digits)
    point = count + exponent
    exp = point - 1
    prefix = "-" if sign else ""
    if exp < -4 or exp >= 6:
        mantissa = digits[0] + ("." + digits[1:] if count > 1 else "")
        return f"{prefix}{mantissa}e{'-' if exp < 0 else '+'}{abs(exp):02d}"
    if point <= 0:
        return f"{prefix}0.{'0' * -point}{digits}"
    if point >= count:
        return f"{prefix}{digits}{'0' * (point - count)}"
    return f"{prefix}{digits[:point]}.{digits[point:]}"


def _parse_float(text: str) -> float:
    if "_" in text:
        raise ValueError(f"invalid float {text!r}")
    return float(text)


def _round_to_seconds(delta: timedelta) -> int:
    """Round to whole seconds, halves away from zero."""
    micros = delta // timedelta(microseconds=1)
    seconds, remainder = divmod(abs(micros), 1_000_000)
    if remainder * 2 >= 1_000_000:
        seconds += 1
    return -seconds if micros < 0 else seconds


def _unix(ts: datetime) -> int:
    return math.floor(ts.timestamp())


def _result_type(result: Any) -> str:
    if isinstance(result, Scalar):
        return "scalar"
    if isinstance(result, (list, tuple)):
        if all(isinstance(item, SampleStream) for item in result):
            return "matrix"
        if all(isinstance(item, Sample) for item in result):
            return "vector"
    if isinstance(result, str):
        return "string"
    return type(result).__name__


class QueryExecutor:
    """Executes one query against a Prometheus API and hands the produced events to a sink."""

    def __init__(
        self,
        options: QueryOptions,
        sink: Callable[[RawEvent], None],
        api: _QueryApi | None = None,
    ) -> None:
        self.options = options
        self.sink = sink
        self.api = api
        self.previous_result = QueryResult()
        self.query_fails_total = 0
        self.unsupported_result_types: Counter[str] = Counter()
        self.last_query_duration: float | None = None
        self._lock = threading.Lock()

    def with_range_selector(self, ts: datetime) -> str:
        """The query with a range selector covering the time since the previous execution."""
        previous = self.previous_result
        if not previous.metrics or previous.timestamp is None:
            window = self.options.interval
        else:
            window = ts - previous.timestamp
        return f"{self.options.query}[{_round_to_seconds(window)}s]"

    def execute(self, ts: datetime) -> Any:
        """Run the query at ``ts`` and return the raw result."""
        if self.api is None:
            raise RuntimeError("no Prometheus API configured for the query executor")
        if self.options.type is QueryType.SIMPLE:
            query = self.options.query
        else:
            query = self.with_range_selector(ts)
        start = time.perf_counter()
        try:
            return self.api.query(query, ts)
        finally:
            self.last_query_duration = time.perf_counter() - start
            _log.debug("executed query %r at %s in %.3fs", query, ts, self.last_query_duration)

    def run(self, stop_event: threading.Event) -> None:
        """Execute the query every interval until ``stop_event`` is set."""
        interval = self.options.interval.total_seconds()
        if interval <= 0:
            raise ValueError("query interval must be positive")
        while not stop_event.wait(interval):
            ts = datetime.now(timezone.utc)
            try:
                result = self.execute(ts)
            except Exception as exc:  # any failure of the API call counts as a failed query
                self.query_fails_total += 1
                _log.error("failed querying Prometheus with %r: %s", self.options.query, exc)
                continue
            try:
                self.process_result(result, ts)
            except ValueError as exc:
                _log.error("failed processing the result of %r: %s", self.options.query, exc)

    def process_result(self, result: Any, ts: datetime) -> None:
        """Emit events for a query result according to the query type."""
        kind = _result_type(result)
        query_type = self.options.type
        if query_type is QueryType.HISTOGRAM_INCREASE and kind == "matrix":
            self.process_histogram_increase(result, ts)
            return
        if query_type is QueryType.COUNTER_INCREASE and kind == "matrix":
            self.process_counters_increase(result, ts)
            return
        if query_type is QueryType.SIMPLE:
            if kind == "matrix":
                for stream in result:
                    for sample in stream.values:
                        self._emit(sample.timestamp // 1000, sample.value, StringMap(stream.metric))
                return
            if kind == "vector":
                for sample in result:
                    self._emit(sample.timestamp // 1000, sample.value, StringMap(sample.metric))
                return
            if kind == "scalar":
                self._emit(result.timestamp // 1000, result.value, StringMap())
                return
        self.unsupported_result_types[kind] += 1
        raise ValueError(f"unsupported Prometheus value type '{kind}' for query type '{query_type.value}'")

    def process_counters_increase(self, matrix: Sequence[SampleStream], ts: datetime) -> None:
        """Emit the increase of every counter since the previous execution."""
        unix = _unix(ts)
        for metric, increase in self._increases(matrix, ts):
            self._emit(unix, increase, StringMap(metric))

    def process_histogram_increase(self, matrix: Sequence[SampleStream], ts: datetime) -> None:
        """Emit an event per histogram bucket interval with the increase of observations in it."""
        groups: dict[str, dict[float, tuple[Mapping[str, str], float]]] = {}
        errors: list[str] = []
        for metric, increase in self._increases(matrix, ts):
            labels = StringMap(metric)
            bucket = labels.get("le")
            if bucket is None:
                errors.append(f"metric {labels} missing `le` bucket")
                continue
            try:
                bucket_value = _parse_float(bucket)
            except ValueError:
                errors.append(f"histogram metric `{labels}` has invalid `le` label")
                continue
            groups.setdefault(str(labels.without(["le"])), {})[bucket_value] = (metric, increase)
        if errors:
            raise ValueError("; ".join(errors))

        unix = _unix(ts)
        for buckets in groups.values():
            previous_key = -math.inf
            for key in sorted(buckets):
                metric, value = buckets[key]
                previous_value = buckets[previous_key][1] if previous_key in buckets else 0.0
                interval_increase = value - previous_value
                if interval_increase < 0:
                    raise ValueError(
                        "lower histogram bucket has higher cumulative count than higher bucket - "
                        f"probably inconsistent data: le={_format_float(key)} {_format_float(value)} "
                        f"and le={_format_float(previous_key)} {_format_float(previous_value)}"
                    )
                self._emit(
                    unix,
                    interval_increase,
                    StringMap(metric).merge(
                        {
                            METADATA_HISTOGRAM_MIN_VALUE: _format_float(previous_key),
                            METADATA_HISTOGRAM_MAX_VALUE: _format_float(key),
                        }
                    ),
                )
                previous_key = key

    def _increases(
        self, matrix: Sequence[SampleStream], ts: datetime
    ) -> list[tuple[Mapping[str, str], float]]:
        """Increase of each metric since the previous result; the previous result is replaced."""
        current = QueryResult(timestamp=ts)
        increases: list[tuple[Mapping[str, str], float]] = []
        with self._lock:
            for stream in matrix:
                if not stream.values:
                    continue
                key = fingerprint(stream.metric)
                previous = self.previous_result.metrics.get(key, stream.values[0])
                total = 0.0
                for sample in stream.values:
                    total += increase_between_samples(previous, sample)
                    previous = sample
                current.metrics[key] = previous
                increases.append((stream.metric, total))
            self.previous_result = current
        return increases

    def _emit(self, unix_seconds: int, result: float, metadata: StringMap) -> None:
        quantity = 1.0
        if self.options.result_as_quantity:
            if result < 0:
                _log.error("cannot report negative result %s as quantity for %r", result, metadata)
                return
            quantity = float(result)
        if quantity == 0:
            return
        merged = metadata.merge(
            {METADATA_VALUE_KEY: _format_float(result), METADATA_TIMESTAMP_KEY: str(unix_seconds)}
        )
        merged = merged.without(self.options.drop_labels).merge(self.options.additional_labels)
        self.sink(RawEvent(metadata=merged, quantity=quantity))