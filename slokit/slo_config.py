"""Loading of SLO rule configuration files."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping

import yaml

from slokit.stringmap import StringMap


class ConfigError(ValueError):
    """Raised when a rules configuration cannot be loaded."""


@dataclass
class OperatorOptions:
    operator: str = ""
    key: str = ""
    value: str = ""


@dataclass
class SloMatcherOptions:
    domain: str = ""
    class_: str = ""
    app: str = ""


@dataclass
class RuleOptions:
    metadata_matcher: list[OperatorOptions] = field(default_factory=list)
    slo_matcher: SloMatcherOptions = field(default_factory=SloMatcherOptions)
    failure_conditions: list[OperatorOptions] = field(default_factory=list)
    additional_metadata: StringMap = field(default_factory=StringMap)


def _scalar(value: Any, where: str) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (str, int, float)):
        return str(value)
    raise ConfigError(f"{where}: expected a scalar value, got {type(value).__name__}")


def _mapping(data: Any, allowed: set[str], where: str) -> Mapping[str, Any]:
    if data is None:
        return {}
    if not isinstance(data, Mapping):
        raise ConfigError(f"{where}: expected a mapping, got {type(data).__name__}")
    unknown = sorted(str(key) for key in data if key not in allowed)
    if unknown:
        raise ConfigError(f"{where}: unknown fields {unknown}")
    return data


def _sequence(data: Any, where: str) -> list[Any]:
    if data is None:
        return []
    if not isinstance(data, list):
        raise ConfigError(f"{where}: expected a list, got {type(data).__name__}")
    return data


def _operator_options(data: Any, where: str) -> OperatorOptions:
    fields = _mapping(data, {"operator", "key", "value"}, where)
    return OperatorOptions(
        operator=_scalar(fields.get("operator"), f"{where}.operator"),
        key=_scalar(fields.get("key"), f"{where}.key"),
        value=_scalar(fields.get("value"), f"{where}.value"),
    )


def _operators(data: Any, where: str) -> list[OperatorOptions]:
    return [
        _operator_options(item, f"{where}[{position}]")
        for position, item in enumerate(_sequence(data, where))
    ]


def _rule_options(data: Any, where: str) -> RuleOptions:
    fields = _mapping(
        data,
        {"metadata_matcher", "slo_matcher", "failure_conditions", "additional_metadata"},
        where,
    )
    matcher = _mapping(fields.get("slo_matcher"), {"domain", "class", "app"}, f"{where}.slo_matcher")
    metadata = _mapping(
        fields.get("additional_metadata"),
        {key for key in (fields.get("additional_metadata") or {})} if isinstance(fields.get("additional_metadata"), Mapping) else set(),
        f"{where}.additional_metadata",
    )
    return RuleOptions(
        metadata_matcher=_operators(fields.get("metadata_matcher"), f"{where}.metadata_matcher"),
        slo_matcher=SloMatcherOptions(
            domain=_scalar(matcher.get("domain"), f"{where}.slo_matcher.domain"),
            class_=_scalar(matcher.get("class"), f"{where}.slo_matcher.class"),
            app=_scalar(matcher.get("app"), f"{where}.slo_matcher.app"),
        ),
        failure_conditions=_operators(fields.get("failure_conditions"), f"{where}.failure_conditions"),
        additional_metadata=StringMap(
            (str(key), _scalar(value, f"{where}.additional_metadata.{key}"))
            for key, value in metadata.items()
        ),
    )


@dataclass
class RulesConfig:
    rules: list[RuleOptions] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Any) -> "RulesConfig":
        """Build a configuration from parsed YAML, rejecting unknown fields."""
        fields = _mapping(data, {"rules"}, "config")
        return cls(
            rules=[
                _rule_options(item, f"rules[{position}]")
                for position, item in enumerate(_sequence(fields.get("rules"), "rules"))
            ]
        )


def load_rules_file(path: str) -> RulesConfig:
    """Read and validate a YAML rules file."""
    try:
        with open(path, encoding="utf-8") as handle:
            content = handle.read()
    except OSError as exc:
        raise ConfigError(f"failed to load configuration file: {exc}") from exc
    try:
        return RulesConfig.from_dict(yaml.safe_load(content))
    except (yaml.YAMLError, ConfigError) as exc:
        raise ConfigError(f"failed to unmarshall configuration file: {exc}") from exc