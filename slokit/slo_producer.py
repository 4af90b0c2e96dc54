"""Pipeline stage turning raw classified events into SLO events."""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Iterable, Iterator, Mapping

from slokit.evaluator import EventEvaluator
from slokit.events import RawEvent, SloEvent
from slokit.slo_config import ConfigError

_log = logging.getLogger(__name__)

_CONFIG_KEYS = {"exposerulesasmetrics": "ExposeRulesAsMetrics", "rulesfiles": "RulesFiles"}


class SloEventProducer:
    """Evaluates each incoming event against the configured SLO rules."""

    def __init__(
        self,
        evaluator: EventEvaluator,
        expose_rules_as_metrics: bool = False,
        observer: Callable[[float], None] | None = None,
    ) -> None:
        self.evaluator = evaluator
        self.expose_rules_as_metrics = expose_rules_as_metrics
        self.observer = observer
        self.done = False

    def __str__(self) -> str:
        return "sloEventProducer"

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "SloEventProducer":
        """Build from a mapping with ``RulesFiles`` and ``ExposeRulesAsMetrics`` (keys case-insensitive)."""
        values: dict[str, Any] = {}
        for key, value in (config or {}).items():
            normalized = str(key).lower()
            if normalized not in _CONFIG_KEYS:
                raise ConfigError(f"failed to load configuration: unknown field {key!r}")
            values[normalized] = value
        expose = values.get("exposerulesasmetrics", False)
        if not isinstance(expose, bool):
            raise ConfigError("failed to load configuration: ExposeRulesAsMetrics must be a boolean")
        files = values.get("rulesfiles") or []
        if isinstance(files, str) or not all(isinstance(path, str) for path in files):
            raise ConfigError("failed to load configuration: RulesFiles must be a list of paths")
        return cls(EventEvaluator.from_files(files), expose_rules_as_metrics=expose)

    def process(self, event: RawEvent) -> list[SloEvent]:
        """Return the SLO events generated for a single raw event."""
        return self.evaluator.evaluate(event)

    def run(self, events: Iterable[RawEvent]) -> Iterator[SloEvent]:
        """Yield SLO events for every event of the input until it is exhausted."""
        self.done = False
        for event in events:
            start = time.perf_counter()
            produced = self.process(event)
            if self.observer is not None:
                self.observer(time.perf_counter() - start)
            yield from produced
        _log.info("input exhausted, finishing")
        self.done = True