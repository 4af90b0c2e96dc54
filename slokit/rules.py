"""SLO evaluation rules matching classified events and deciding their outcome."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field

from slokit.events import EventResult, RawEvent, SloClassification, SloEvent
from slokit.operators import Operator, OperatorError, new_operator
from slokit.slo_config import ConfigError, RuleOptions
from slokit.stringmap import StringMap

_log = logging.getLogger(__name__)


def _compile_matcher(pattern: str, what: str) -> re.Pattern[str] | None:
    if not pattern:
        return None
    try:
        return re.compile(pattern)
    except re.error as exc:
        raise ConfigError(f"invalid {what} matcher regexp: {exc}") from exc


@dataclass
class SloClassificationMatcher:
    """Optional patterns that an event's SLO classification has to match."""

    domain: re.Pattern[str] | None = None
    class_: re.Pattern[str] | None = None
    app: re.Pattern[str] | None = None

    def matches(self, classification: SloClassification) -> bool:
        """True if every configured pattern is found in the corresponding field."""
        checks = (
            (self.domain, classification.domain),
            (self.class_, classification.class_),
            (self.app, classification.app),
        )
        return all(pattern is None or pattern.search(value) is not None for pattern, value in checks)


@dataclass
class EvaluationRule:
    """Selects events by classification and metadata and marks them failed or successful."""

    slo_matcher: SloClassificationMatcher = field(default_factory=SloClassificationMatcher)
    metadata_matcher: list[Operator] = field(default_factory=list)
    failure_conditions: list[Operator] = field(default_factory=list)
    additional_metadata: StringMap = field(default_factory=StringMap)

    @classmethod
    def from_options(cls, options: RuleOptions) -> "EvaluationRule":
        """Build a rule from its configuration; raises on invalid operators or patterns."""
        metadata_matcher = [new_operator(item) for item in options.metadata_matcher]
        failure_conditions = [new_operator(item) for item in options.failure_conditions]
        matcher = SloClassificationMatcher(
            domain=_compile_matcher(options.slo_matcher.domain, "domain"),
            class_=_compile_matcher(options.slo_matcher.class_, "class"),
            app=_compile_matcher(options.slo_matcher.app, "app"),
        )
        return cls(
            slo_matcher=matcher,
            metadata_matcher=metadata_matcher,
            failure_conditions=failure_conditions,
            additional_metadata=StringMap(options.additional_metadata or {}),
        )

    def is_failed(self, event: RawEvent) -> bool:
        """True if any failure condition holds for the event."""
        for operator in self.failure_conditions:
            try:
                if operator.evaluate(event):
                    return True
            except OperatorError as exc:
                _log.warning("failed to evaluate operator %r on event %r: %s", operator, event, exc)
        return False

    def process_event(self, event: RawEvent) -> SloEvent | None:
        """Return the SLO event for a matching event, or None if the rule does not apply."""
        classification = event.slo_classification
        if classification is None or not event.is_classified():
            return None
        if not self.slo_matcher.matches(classification):
            return None
        for operator in self.metadata_matcher:
            try:
                matches = operator.evaluate(event)
            except OperatorError as exc:
                _log.warning(
                    "failed to evaluate metadataMatcher operator %r on event %r: %s", operator, event, exc
                )
                return None
            if not matches:
                return None

        slo_event = SloEvent(
            domain=classification.domain,
            class_=classification.class_,
            app=classification.app,
            result=EventResult.FAIL if self.is_failed(event) else EventResult.SUCCESS,
            metadata=StringMap(self.additional_metadata),
            quantity=event.quantity,
            key=event.key,
        )
        _log.debug("generated new slo event %r", slo_event)
        return slo_event