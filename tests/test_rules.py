import re

import pytest

from slokit.events import EventResult, RawEvent, SloClassification, SloEvent
from slokit.operators import (
    DurationIsHigherThan,
    IsMatchingRegexp,
    NumberIsEqualOrHigherThan,
    NumberIsHigherThan,
    OperatorError,
)
from slokit.rules import EvaluationRule, SloClassificationMatcher
from slokit.slo_config import ConfigError, OperatorOptions, RuleOptions, SloMatcherOptions
from slokit.stringmap import StringMap

CLASSIFICATION = SloClassification(domain="domain", class_="class", app="app")


def _event(metadata, classification=CLASSIFICATION):
    return RawEvent(metadata=StringMap(metadata), slo_classification=classification)


def _expected(result):
    return SloEvent(domain="domain", class_="class", app="app", key="", metadata=StringMap(), result=result)


MATCHING_CASES = [
    (
        "no metadata_matcher, failure_condition does not match -> successful event",
        {"failure_conditions": [NumberIsEqualOrHigherThan(key="statusCode", value=500)]},
        {"statusCode": "200"},
        EventResult.SUCCESS,
    ),
    (
        "no metadata_matcher, failure_condition does match -> failed event",
        {"failure_conditions": [NumberIsEqualOrHigherThan(key="statusCode", value=500)]},
        {"statusCode": "502"},
        EventResult.FAIL,
    ),
    (
        "metadata matcher matches, failure_condition does not match -> successful event",
        {
            "slo_matcher": SloClassificationMatcher(domain=re.compile("domain")),
            "metadata_matcher": [IsMatchingRegexp(key="key", regexp=re.compile("value"))],
            "failure_conditions": [IsMatchingRegexp(key="statusCode", regexp=re.compile("500"))],
        },
        {"statusCode": "200", "key": "value"},
        EventResult.SUCCESS,
    ),
]

NON_MATCHING_CASES = [
    (
        "event is unclassified",
        {"failure_conditions": [IsMatchingRegexp(key="statusCode", regexp=re.compile("500"))]},
        {"statusCode": "502"},
        None,
    ),
    (
        "event does not match the only matcher",
        {
            "slo_matcher": SloClassificationMatcher(domain=re.compile("foo")),
            "failure_conditions": [IsMatchingRegexp(key="statusCode", regexp=re.compile("500"))],
        },
        {"statusCode": "502"},
        CLASSIFICATION,
    ),
    (
        "event does not match any matcher",
        {
            "slo_matcher": SloClassificationMatcher(domain=re.compile("domain")),
            "metadata_matcher": [IsMatchingRegexp(key="key", regexp=re.compile("value"))],
            "failure_conditions": [IsMatchingRegexp(key="statusCode", regexp=re.compile("500"))],
        },
        {"statusCode": "200"},
        CLASSIFICATION,
    ),
]


@pytest.mark.parametrize(
    "name,rule_kwargs,metadata,result", MATCHING_CASES, ids=[case[0] for case in MATCHING_CASES]
)
def test_process_event_matching(name, rule_kwargs, metadata, result):
    rule = EvaluationRule(**rule_kwargs)
    assert rule.process_event(_event(metadata)) == _expected(result)


@pytest.mark.parametrize(
    "name,rule_kwargs,metadata,classification",
    NON_MATCHING_CASES,
    ids=[case[0] for case in NON_MATCHING_CASES],
)
def test_process_event_not_matching(name, rule_kwargs, metadata, classification):
    rule = EvaluationRule(**rule_kwargs)
    assert rule.process_event(_event(metadata, classification)) is None


def test_matcher_patterns_are_searched():
    matcher = SloClassificationMatcher(domain=re.compile("oma"), app=re.compile("^app$"))
    assert matcher.matches(CLASSIFICATION) is True
    assert matcher.matches(SloClassification(domain="domain", class_="class", app="apps")) is False


def test_empty_matcher_matches_everything():
    assert SloClassificationMatcher().matches(SloClassification(domain="x", class_="y", app="z")) is True


def test_from_options_builds_working_rule():
    options = RuleOptions(
        slo_matcher=SloMatcherOptions(domain="domain"),
        failure_conditions=[OperatorOptions(operator="numberIsHigherThan", key="statusCode", value="500")],
        additional_metadata=StringMap({"slo_type": "availability"}),
    )
    rule = EvaluationRule.from_options(options)
    assert rule.failure_conditions == [NumberIsHigherThan(key="statusCode", value=500.0)]
    result = rule.process_event(_event({"statusCode": "502"}))
    assert result.result is EventResult.FAIL
    assert result.metadata == {"slo_type": "availability"}


def test_from_options_rejects_invalid_regexp():
    options = RuleOptions(slo_matcher=SloMatcherOptions(class_="***"))
    with pytest.raises(ConfigError):
        EvaluationRule.from_options(options)


def test_from_options_rejects_unknown_operator():
    options = RuleOptions(failure_conditions=[OperatorOptions(operator="xxx", value="xxx")])
    with pytest.raises(OperatorError):
        EvaluationRule.from_options(options)


def test_failure_condition_error_is_not_failure():
    rule = EvaluationRule(failure_conditions=[DurationIsHigherThan(key="duration")])
    assert rule.is_failed(_event({"duration": "foo"})) is False


def test_failure_condition_stops_at_first_match():
    rule = EvaluationRule(
        failure_conditions=[
            NumberIsHigherThan(key="statusCode", value=500),
            DurationIsHigherThan(key="duration"),
        ]
    )
    assert rule.is_failed(_event({"statusCode": "503", "duration": "foo"})) is True


def test_metadata_matcher_error_drops_event():
    rule = EvaluationRule(metadata_matcher=[NumberIsHigherThan(key="statusCode", value=1)])
    assert rule.process_event(_event({"statusCode": "abc"})) is None


def test_event_quantity_and_key_are_kept():
    rule = EvaluationRule()
    event = RawEvent(metadata=StringMap(), quantity=7, slo_classification=CLASSIFICATION, key="k1")
    result = rule.process_event(event)
    assert (result.quantity, result.key) == (7, "k1")