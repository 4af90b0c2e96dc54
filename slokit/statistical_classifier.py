"""Pipeline stage guessing the classification of unclassified events."""

from __future__ import annotations

import dataclasses
import logging
import threading
import time
from collections import Counter
from datetime import timedelta
from typing import Any, Callable, Iterable, Iterator, Mapping

from slokit.events import RawEvent, SloClassification
from slokit.operators import parse_duration
from slokit.slo_config import ConfigError
from slokit.weighted_classifier import (
    ClassificationWeight,
    WeightedClassificationSet,
    WeightedClassifier,
)

_log = logging.getLogger(__name__)

GUESSED_LABEL_PLACEHOLDER = "statistically-guessed"
DEFAULT_HISTORY_WINDOW_SIZE = timedelta(minutes=30)
DEFAULT_HISTORY_WEIGHT_UPDATE_INTERVAL = timedelta(minutes=1)

_TOP_KEYS = {
    "historywindowsize": "HistoryWindowSize",
    "historyweightupdateinterval": "HistoryWeightUpdateInterval",
    "defaultweights": "DefaultWeights",
}
_WEIGHT_KEYS = {"weight": "Weight", "classification": "Classification"}
_CLASSIFICATION_KEYS = {"slodomain": "SloDomain", "sloclass": "SloClass"}


class ClassificationError(Exception):
    """Raised when an event cannot be classified."""


def _fields(data: Any, allowed: Mapping[str, str], where: str) -> dict[str, Any]:
    if data is None:
        return {}
    if not isinstance(data, Mapping):
        raise ConfigError(f"failed to load configuration: {where} must be a mapping")
    fields: dict[str, Any] = {}
    for key, value in data.items():
        canonical = allowed.get(str(key).lower())
        if canonical is None:
            raise ConfigError(f"failed to load configuration: unknown field {key!r} in {where}")
        fields[canonical] = value
    return fields


def _duration(value: Any, default: timedelta, name: str) -> timedelta:
    if value is None:
        return default
    if isinstance(value, timedelta):
        return value
    if isinstance(value, str):
        try:
            return parse_duration(value)
        except ValueError as exc:
            raise ConfigError(f"failed to load configuration: invalid {name}: {exc}") from exc
    raise ConfigError(f"failed to load configuration: {name} must be a duration")


def _default_weights(items: Any) -> WeightedClassificationSet | None:
    if items is None:
        return None
    if not isinstance(items, list):
        raise ConfigError("failed to load configuration: DefaultWeights must be a list")
    weights = []
    for position, item in enumerate(items):
        where = f"DefaultWeights[{position}]"
        fields = _fields(item, _WEIGHT_KEYS, where)
        weight = fields.get("Weight", 0)
        if isinstance(weight, bool) or not isinstance(weight, (int, float)):
            raise ConfigError(f"failed to load configuration: {where}.Weight must be a number")
        classification = _fields(fields.get("Classification"), _CLASSIFICATION_KEYS, f"{where}.Classification")
        weights.append(
            ClassificationWeight(
                classification=SloClassification(
                    domain=str(classification.get("SloDomain") or ""),
                    class_=str(classification.get("SloClass") or ""),
                    app=GUESSED_LABEL_PLACEHOLDER,
                ),
                weight=float(weight),
            )
        )
    if not weights:
        return None
    return WeightedClassificationSet(weights)


class StatisticalClassifier:
    """Guesses classifications of unclassified events from recently seen classified ones."""

    def __init__(
        self,
        classifier: WeightedClassifier,
        observer: Callable[[float], None] | None = None,
    ) -> None:
        self.classifier = classifier
        self.observer = observer
        self.events_processed_total: Counter[str] = Counter()
        self.errors_total: Counter[str] = Counter()
        self.done = False

    def __str__(self) -> str:
        return "statisticalClassifier"

    @classmethod
    def from_config(cls, config: Mapping[str, Any] | None) -> "StatisticalClassifier":
        """Build from a mapping with HistoryWindowSize, HistoryWeightUpdateInterval and DefaultWeights."""
        fields = _fields(config, _TOP_KEYS, "configuration")
        window = _duration(fields.get("HistoryWindowSize"), DEFAULT_HISTORY_WINDOW_SIZE, "HistoryWindowSize")
        interval = _duration(
            fields.get("HistoryWeightUpdateInterval"),
            DEFAULT_HISTORY_WEIGHT_UPDATE_INTERVAL,
            "HistoryWeightUpdateInterval",
        )
        try:
            classifier = WeightedClassifier(window, interval)
        except ValueError as exc:
            raise ConfigError(str(exc)) from exc
        classifier.set_default_weights(_default_weights(fields.get("DefaultWeights")))
        return cls(classifier)

    def classify(self, event: RawEvent) -> None:
        """Guess the classification of an unclassified event, or learn from a classified one."""
        if not event.is_classified():
            try:
                classification = self.classifier.guess_class()
            except LookupError as exc:
                self.events_processed_total["unclassified"] += 1
                raise ClassificationError(str(exc)) from exc
            event.update_slo_classification(classification)
            self.events_processed_total["classified"] += 1
        else:
            assert event.slo_classification is not None
            sanitized = dataclasses.replace(event.slo_classification, app=GUESSED_LABEL_PLACEHOLDER)
            self.classifier.increase_weight(sanitized, 1)
            self.events_processed_total["increased-weight"] += 1

    def run(self, events: Iterable[RawEvent]) -> Iterator[RawEvent]:
        """Yield every event that is or could be classified, refreshing weights in the background."""
        self.done = False
        stop = threading.Event()
        self.classifier.start(stop)
        try:
            for event in events:
                start = time.perf_counter()
                try:
                    self.classify(event)
                except ClassificationError as exc:
                    _log.error("failed to classify event %r: %s", event, exc)
                    self.errors_total["failedToClassify"] += 1
                else:
                    _log.debug("processed event %r", event)
                    yield event
                if self.observer is not None:
                    self.observer(time.perf_counter() - start)
            _log.info("input exhausted, finishing")
        finally:
            stop.set()
            self.done = True