"""Operators evaluating conditions on event metadata."""

from __future__ import annotations

import math
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal
from fractions import Fraction
from typing import ClassVar

from slokit.events import RawEvent
from slokit.slo_config import OperatorOptions
from slokit.stringmap import StringMap

OPERATOR_NAME_LABEL = "operator"


class OperatorError(ValueError):
    """Raised for invalid operator options or metadata that cannot be evaluated."""


@dataclass
class Metric:
    """A value with labels, as exposed for a rule threshold."""

    labels: StringMap
    value: float


_DURATION_UNITS = {
    "ns": 1,
    "us": 1_000,
    "µs": 1_000,
    "μs": 1_000,
    "ms": 1_000_000,
    "s": 1_000_000_000,
    "m": 60_000_000_000,
    "h": 3_600_000_000_000,
}
_DURATION_PART = re.compile(r"([0-9]+\.?[0-9]*|\.[0-9]+)(ns|us|µs|μs|ms|s|m|h)")


def parse_duration(text: str) -> timedelta:
    """Parse a duration such as ``"1h30m"``, ``"1.5s"`` or ``"-20ms"``."""
    rest = text
    sign = 1
    if rest[:1] in ("+", "-") and rest:
        sign = -1 if rest[0] == "-" else 1
        rest = rest[1:]
    if rest == "0":
        return timedelta(0)
    if not rest:
        raise ValueError(f"invalid duration {text!r}")
    total_ns = Fraction(0)
    position = 0
    while position < len(rest):
        match = _DURATION_PART.match(rest, position)
        if match is None:
            raise ValueError(f"invalid duration {text!r}")
        total_ns += Fraction(match.group(1)) * _DURATION_UNITS[match.group(2)]
        position = match.end()
    return timedelta(microseconds=float(sign * total_ns / 1000))


def _parse_float(text: str) -> float:
    if not text or text != text.strip() or "_" in text:
        raise ValueError(f"invalid syntax: {text!r}")
    if text.lstrip("+-").lower().startswith("0x"):
        return float.fromhex(text)
    return float(text)


def _format_float(value: float) -> str:
    """Shortest general representation of a float, exponent form for large or small values."""
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "+Inf" if value > 0 else "-Inf"
    sign = "-" if math.copysign(1.0, value) < 0 else ""
    if value == 0:
        return sign + "0"
    parts = Decimal(repr(abs(value))).as_tuple()
    digits = "".join(map(str, parts.digits))
    point = len(digits) + parts.exponent
    digits = digits.rstrip("0")
    exponent = point - 1
    if exponent < -4 or exponent >= 6:
        mantissa = digits[0] + ("." + digits[1:] if len(digits) > 1 else "")
        return f"{sign}{mantissa}e{'-' if exponent < 0 else '+'}{abs(exponent):02d}"
    if point <= 0:
        return f"{sign}0.{'0' * -point}{digits}"
    if point >= len(digits):
        return sign + digits + "0" * (point - len(digits))
    return f"{sign}{digits[:point]}.{digits[point:]}"


class Operator(ABC):
    """A condition evaluated against a raw event."""

    @abstractmethod
    def evaluate(self, event: RawEvent) -> bool:
        """Return whether the event satisfies the condition; raise OperatorError on bad metadata."""

    @classmethod
    @abstractmethod
    def _from_options(cls, options: OperatorOptions) -> "Operator":
        """Build the operator from configuration options."""


def _metadata_value(event: RawEvent, key: str) -> str | None:
    return (event.metadata or {}).get(key)


@dataclass
class NumberComparisonOperator(Operator):
    """Compares a numeric metadata value with a threshold."""

    name: ClassVar[str] = ""
    key: str = ""
    value: float = 0.0

    @classmethod
    def _from_options(cls, options: OperatorOptions) -> "NumberComparisonOperator":
        try:
            threshold = _parse_float(options.value)
        except ValueError as exc:
            raise OperatorError(
                f"invalid value for operator {cls.name}, should be in float like format: {exc}"
            ) from exc
        return cls(key=options.key, value=threshold)

    @abstractmethod
    def _compare(self, tested: float) -> bool:
        """Compare the tested value with the threshold."""

    def evaluate(self, event: RawEvent) -> bool:
        raw = _metadata_value(event, self.key)
        if raw is None:
            return False
        try:
            tested = _parse_float(raw)
        except ValueError as exc:
            raise OperatorError(
                f"invalid metadata value for operator {self.name}, should be in float like format: {exc}"
            ) from exc
        return self._compare(tested)

    def as_metric(self) -> Metric:
        return Metric(labels=StringMap({OPERATOR_NAME_LABEL: self.name}), value=self.value)


@dataclass
class NumberIsHigherThan(NumberComparisonOperator):
    name: ClassVar[str] = "numberIsHigherThan"

    def _compare(self, tested: float) -> bool:
        return tested > self.value


@dataclass
class NumberIsEqualOrHigherThan(NumberComparisonOperator):
    name: ClassVar[str] = "numberIsEqualOrHigherThan"

    def _compare(self, tested: float) -> bool:
        return tested >= self.value


@dataclass
class NumberIsEqualOrLessThan(NumberComparisonOperator):
    name: ClassVar[str] = "numberIsEqualOrLessThan"

    def _compare(self, tested: float) -> bool:
        return tested <= self.value


@dataclass
class NumberIsEqualTo(NumberComparisonOperator):
    name: ClassVar[str] = "numberIsEqualTo"

    def _compare(self, tested: float) -> bool:
        return tested == self.value

    def labels(self) -> StringMap:
        return StringMap({self.key: _format_float(self.value)})


@dataclass
class NumberIsNotEqualTo(NumberComparisonOperator):
    name: ClassVar[str] = "numberIsNotEqualTo"

    def _compare(self, tested: float) -> bool:
        return tested != self.value


@dataclass
class DurationIsHigherThan(Operator):
    """True when a duration in the metadata exceeds the threshold."""

    key: str = ""
    threshold: timedelta = field(default_factory=timedelta)

    @classmethod
    def _from_options(cls, options: OperatorOptions) -> "DurationIsHigherThan":
        try:
            threshold = parse_duration(options.value)
        except ValueError as exc:
            raise OperatorError(
                f"invalid duration value for operator durationIsHigherThan: {exc}"
            ) from exc
        return cls(key=options.key, threshold=threshold)

    def evaluate(self, event: RawEvent) -> bool:
        raw = _metadata_value(event, self.key)
        if raw is None:
            return False
        try:
            tested = parse_duration(raw)
        except ValueError as exc:
            raise OperatorError(
                f"invalid metadata value for operator durationIsHigherThan: {exc}"
            ) from exc
        return tested > self.threshold


@dataclass
class IsEqualTo(Operator):
    key: str = ""
    value: str = ""

    @classmethod
    def _from_options(cls, options: OperatorOptions) -> "IsEqualTo":
        return cls(key=options.key, value=options.value)

    def evaluate(self, event: RawEvent) -> bool:
        tested = _metadata_value(event, self.key)
        return tested is not None and tested == self.value

    def labels(self) -> StringMap:
        return StringMap({self.key: self.value})


@dataclass
class IsNotEqualTo(Operator):
    key: str = ""
    value: str = ""

    @classmethod
    def _from_options(cls, options: OperatorOptions) -> "IsNotEqualTo":
        return cls(key=options.key, value=options.value)

    def evaluate(self, event: RawEvent) -> bool:
        tested = _metadata_value(event, self.key)
        return tested is not None and tested != self.value


def _compile(pattern: str, operator_name: str) -> re.Pattern[str]:
    try:
        return re.compile(pattern)
    except re.error as exc:
        raise OperatorError(f"invalid regexp matcher for {operator_name} operator: {exc}") from exc


@dataclass
class IsMatchingRegexp(Operator):
    key: str = ""
    regexp: re.Pattern[str] = field(default_factory=lambda: re.compile(""))

    @classmethod
    def _from_options(cls, options: OperatorOptions) -> "IsMatchingRegexp":
        return cls(key=options.key, regexp=_compile(options.value, "isMatchingRegexp"))

    def evaluate(self, event: RawEvent) -> bool:
        tested = _metadata_value(event, self.key)
        return tested is not None and self.regexp.search(tested) is not None


@dataclass
class IsNotMatchingRegexp(Operator):
    key: str = ""
    regexp: re.Pattern[str] = field(default_factory=lambda: re.compile(""))

    @classmethod
    def _from_options(cls, options: OperatorOptions) -> "IsNotMatchingRegexp":
        return cls(key=options.key, regexp=_compile(options.value, "isNotMatchingRegexp"))

    def evaluate(self, event: RawEvent) -> bool:
        tested = _metadata_value(event, self.key)
        return tested is not None and self.regexp.search(tested) is None


_OPERATORS: dict[str, type[Operator]] = {
    "isEqualTo": IsEqualTo,
    "isNotEqualTo": IsNotEqualTo,
    "isMatchingRegexp": IsMatchingRegexp,
    "isNotMatchingRegexp": IsNotMatchingRegexp,
    "numberIsEqualTo": NumberIsEqualTo,
    "numberIsNotEqualTo": NumberIsNotEqualTo,
    "numberIsHigherThan": NumberIsHigherThan,
    "numberIsEqualOrHigherThan": NumberIsEqualOrHigherThan,
    "numberIsEqualOrLessThan": NumberIsEqualOrLessThan,
    "durationIsHigherThan": DurationIsHigherThan,
}


def new_operator(options: OperatorOptions) -> Operator:
    """Create the operator named in the options."""
    operator_class = _OPERATORS.get(options.operator)
    if operator_class is None:
        raise OperatorError(
            f"unknown operator {options.operator}, possible options are: {sorted(_OPERATORS)}"
        )
    return operator_class._from_options(options)