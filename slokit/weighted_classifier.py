"""Classification guessing weighted by how often classifications were seen recently."""

from __future__ import annotations

import logging
import random
import threading
from dataclasses import dataclass
from datetime import timedelta
from typing import Iterable, Mapping

from slokit.events import SloClassification
from slokit.storage import CappedContainer

_log = logging.getLogger(__name__)

# Current weight of each (slo_domain, slo_class) pair, as last set by any classification set.
classification_weights_gauge: dict[tuple[str, str], float] = {}
_gauge_lock = threading.Lock()


@dataclass
class ClassificationWeight:
    """A classification together with its weight."""

    classification: SloClassification
    weight: float = 0.0


class ClassificationMapping(dict):
    """Weights of classifications keyed by the classification's string form."""

    def inc(self, classification: SloClassification, weight: float) -> None:
        """Add ``weight`` to the classification, creating its entry if needed."""
        key = str(classification)
        entry = self.get(key)
        if entry is None:
            entry = ClassificationWeight(classification=classification, weight=0.0)
            self[key] = entry
        entry.weight += weight

    def merge(self, other: Mapping[str, ClassificationWeight]) -> None:
        """Add all weights of ``other`` into this mapping."""
        for entry in other.values():
            self.inc(entry.classification, entry.weight)


class WeightedClassificationSet:
    """Indexed list of classifications and their weights."""

    def __init__(self, weights: Iterable[ClassificationWeight] | None = None) -> None:
        self._lock = threading.Lock()
        self._classifications: list[ClassificationWeight] = []
        self._weights: list[float] = []
        if weights is not None:
            self.set_weights(weights)

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, ClassificationWeight]) -> "WeightedClassificationSet":
        """Build a set from a classification mapping, copying its entries."""
        return cls(
            ClassificationWeight(classification=entry.classification, weight=entry.weight)
            for entry in mapping.values()
        )

    def set_weights(self, weights: Iterable[ClassificationWeight]) -> None:
        """Replace the content of the set."""
        entries = list(weights)
        with self._lock:
            self._classifications = entries
            self._weights = [entry.weight for entry in entries]
        with _gauge_lock:
            for entry in entries:
                key = (entry.classification.domain, entry.classification.class_)
                classification_weights_gauge[key] = entry.weight

    def weights(self) -> list[float]:
        with self._lock:
            return list(self._weights)

    def index(self, i: int) -> SloClassification:
        with self._lock:
            return self._classifications[i].classification

    @property
    def classifications(self) -> list[ClassificationWeight]:
        with self._lock:
            return list(self._classifications)

    def __len__(self) -> int:
        with self._lock:
            return len(self._classifications)


class WeightedClassifier:
    """Keeps a window of recent classification weights and guesses classifications from it."""

    def __init__(
        self,
        window_size: timedelta,
        history_update_interval: timedelta,
        rng: random.Random | None = None,
    ) -> None:
        if history_update_interval == timedelta(0):
            raise ValueError("history update interval cannot be zero")
        self.history = CappedContainer(int(window_size / history_update_interval))
        self.total_weights_over_history = WeightedClassificationSet()
        self.default_weights: WeightedClassificationSet | None = None
        self.recent_weights = ClassificationMapping()
        self.history_update_interval = history_update_interval
        self.failed_updates = 0
        self._lock = threading.RLock()
        self._rng = rng or random.Random()

    def increase_weight(self, classification: SloClassification, weight: float) -> None:
        """Increase the weight of a classification in the recent data."""
        with self._lock:
            self.recent_weights.inc(classification, weight)

    def set_default_weights(self, default_weights: WeightedClassificationSet | None) -> None:
        self.default_weights = default_weights

    def archive(self) -> None:
        """Move recent weights into the history and recompute the weights over it."""
        with self._lock:
            self.history.add(self.recent_weights)
            self.recent_weights = ClassificationMapping()
            try:
                self.reweight()
            except TypeError as exc:
                raise RuntimeError(f"failed to reweight classifier from historical data: {exc}") from exc

    def reweight(self) -> None:
        """Recalculate the total weights over the whole history."""
        total = ClassificationMapping()
        for item in self.history.stream():
            if not isinstance(item, ClassificationMapping):
                raise TypeError(f"failed to cast {item!r} to ClassificationMapping")
            total.merge(item)
        with self._lock:
            self.total_weights_over_history = WeightedClassificationSet.from_mapping(total)

    def guess_class(self) -> SloClassification:
        """Pick a classification at random according to the weights.

        Falls back to the default weights when there is no history; raises
        LookupError when there is nothing to guess from.
        """
        with self._lock:
            candidates = self.total_weights_over_history
            weights = candidates.weights()
            if not weights:
                if self.default_weights is not None and self.default_weights.weights():
                    candidates = self.default_weights
                    weights = candidates.weights()
                else:
                    raise LookupError("not enough data to guess")
            if sum(weights) <= 0:
                raise LookupError("not enough data to guess")
            chosen = self._rng.choices(range(len(weights)), weights=weights)[0]
            return candidates.index(chosen)

    def start(self, stop_event: threading.Event) -> threading.Thread:
        """Archive recent weights every update interval until ``stop_event`` is set."""
        interval = self.history_update_interval.total_seconds()

        def _refresh() -> None:
            while not stop_event.wait(interval):
                try:
                    self.archive()
                except RuntimeError as exc:
                    _log.error("failed to update historical data: %s", exc)
                    self.failed_updates += 1

        thread = threading.Thread(target=_refresh, name="weighted-classifier", daemon=True)
        thread.start()
        return thread