"""Evaluation of raw events against a set of SLO rules."""

from __future__ import annotations

import logging
from typing import Iterable

from slokit.events import RawEvent, SloEvent
from slokit.operators import Metric, OperatorError
from slokit.rules import EvaluationRule
from slokit.slo_config import ConfigError, RulesConfig, load_rules_file
from slokit.stringmap import StringMap

_log = logging.getLogger(__name__)

METRIC_FROM_RULES_NAME = "slo_rules_threshold"


class EventEvaluator:
    """Applies every rule to each event and collects the resulting SLO events."""

    def __init__(self, rules: Iterable[EvaluationRule] | None = None) -> None:
        self.rules: list[EvaluationRule] = list(rules or ())
        self.unclassified_events_total = 0
        self.events_not_matching_any_rule_total = 0

    @classmethod
    def from_config(cls, config: RulesConfig) -> "EventEvaluator":
        """Build an evaluator; all invalid rules are reported together in one ConfigError."""
        evaluator = cls()
        problems: list[str] = []
        for position, options in enumerate(config.rules):
            try:
                evaluator.add_rule(EvaluationRule.from_options(options))
            except (ConfigError, OperatorError) as exc:
                problems.append(f"rule {position}: {exc}")
        if problems:
            raise ConfigError("; ".join(problems))
        return evaluator

    @classmethod
    def from_files(cls, paths: Iterable[str]) -> "EventEvaluator":
        """Build an evaluator from the rules of all the given files, in order."""
        combined = RulesConfig()
        for path in paths:
            combined.rules.extend(load_rules_file(path).rules)
        return cls.from_config(combined)

    def add_rule(self, rule: EvaluationRule) -> None:
        self.rules.append(rule)

    def rule_metrics(self) -> tuple[list[Metric], list[str]]:
        """Return the rule thresholds as metrics and the sorted names of all their labels."""
        metrics: list[Metric] = []
        possible_labels: set[str] = set()
        for rule in self.rules:
            for condition in rule.failure_conditions:
                as_metric = getattr(condition, "as_metric", None)
                if not callable(as_metric):
                    continue
                metric = as_metric()
                labels = StringMap(metric.labels).merge(rule.additional_metadata)
                for matcher in rule.metadata_matcher:
                    matcher_labels = getattr(matcher, "labels", None)
                    if callable(matcher_labels):
                        labels = labels.merge(matcher_labels())
                metrics.append(Metric(labels=labels, value=metric.value))
                possible_labels.update(labels)
        return metrics, sorted(possible_labels)

    def evaluate(self, event: RawEvent) -> list[SloEvent]:
        """Return the SLO events produced by all rules matching the event."""
        if not event.is_classified():
            self.unclassified_events_total += 1
            _log.warning("dropping event %r with no classification", event)
            return []
        produced = [slo_event for rule in self.rules if (slo_event := rule.process_event(event)) is not None]
        if not produced:
            _log.warning("event %r did not match any SLO rule", event)
            self.events_not_matching_any_rule_total += 1
        return produced