"""Relabelling of event metadata with Prometheus-style relabel rules."""

from __future__ import annotations

import enum
import hashlib
import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Iterator, Mapping

from slokit.events import RawEvent
from slokit.slo_config import ConfigError
from slokit.stringmap import StringMap

_log = logging.getLogger(__name__)

_LABEL_NAME = re.compile(r"[a-zA-Z_][a-zA-Z0-9_]*")
_WORD = r"[a-zA-Z0-9_]"
_REFERENCE = rf"\$(?:\{{{_WORD}+\}}|{_WORD}+)"
_RELABEL_TARGET = re.compile(rf"(?:[a-zA-Z_]|{_REFERENCE})(?:{_WORD}|{_REFERENCE})*")
_TEMPLATE = re.compile(rf"\$(?:(\$)|\{{({_WORD}+)\}}|({_WORD}+))")

_FIELDS = {"source_labels", "separator", "regex", "modulus", "target_label", "replacement", "action"}


class RelabelAction(enum.Enum):
    """What a relabel rule does with the labels."""

    REPLACE = "replace"
    KEEP = "keep"
    DROP = "drop"
    HASHMOD = "hashmod"
    LABELMAP = "labelmap"
    LABELDROP = "labeldrop"
    LABELKEEP = "labelkeep"


def _scalar(value: Any, where: str) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (str, int, float)):
        return str(value)
    raise ConfigError(f"{where}: expected a scalar value, got {type(value).__name__}")


@dataclass
class RelabelConfig:
    """A single relabel rule; validated on construction."""

    source_labels: tuple[str, ...] = ()
    separator: str = ";"
    regex: str = "(.*)"
    modulus: int = 0
    target_label: str = ""
    replacement: str = "$1"
    action: RelabelAction = RelabelAction.REPLACE

    def __post_init__(self) -> None:
        self.source_labels = tuple(self.source_labels)
        if not isinstance(self.action, RelabelAction):
            try:
                self.action = RelabelAction(str(self.action).lower())
            except ValueError:
                raise ConfigError(f"unknown relabel action {self.action!r}") from None
        for name in self.source_labels:
            if not _LABEL_NAME.fullmatch(name):
                raise ConfigError(f"{name!r} is not a valid label name")
        try:
            self._pattern = re.compile(f"(?:{self.regex})")
        except re.error as exc:
            raise ConfigError(f"invalid relabel regex {self.regex!r}: {exc}") from exc
        self._validate()

    def _validate(self) -> None:
        action = self.action
        if action is RelabelAction.HASHMOD and self.modulus == 0:
            raise ConfigError("relabel configuration for hashmod requires non-zero modulus")
        if action in (RelabelAction.REPLACE, RelabelAction.HASHMOD) and not self.target_label:
            raise ConfigError(f"relabel configuration for {action.value} action requires 'target_label' value")
        if action is RelabelAction.REPLACE and not _RELABEL_TARGET.fullmatch(self.target_label):
            raise ConfigError(f"{self.target_label!r} is invalid 'target_label' for {action.value} action")
        if action is RelabelAction.LABELMAP and not _RELABEL_TARGET.fullmatch(self.replacement):
            raise ConfigError(f"{self.replacement!r} is invalid 'replacement' for {action.value} action")
        if action is RelabelAction.HASHMOD and not _LABEL_NAME.fullmatch(self.target_label):
            raise ConfigError(f"{self.target_label!r} is invalid 'target_label' for {action.value} action")
        if action in (RelabelAction.LABELDROP, RelabelAction.LABELKEEP) and (
            self.source_labels
            or self.target_label
            or self.modulus != 0
            or self.separator != ";"
            or self.replacement != "$1"
        ):
            raise ConfigError(f"{action.value} action requires only 'regex', and no other fields")

    @property
    def pattern(self) -> re.Pattern[str]:
        return self._pattern

    @classmethod
    def from_dict(cls, data: Any) -> "RelabelConfig":
        """Build a rule from parsed YAML, rejecting unknown fields."""
        if not isinstance(data, Mapping):
            raise ConfigError(f"relabel config must be a mapping, got {type(data).__name__}")
        unknown = sorted(str(key) for key in data if key not in _FIELDS)
        if unknown:
            raise ConfigError(f"unknown relabel config fields {unknown}")
        kwargs: dict[str, Any] = {}
        labels = data.get("source_labels")
        if labels is not None:
            if not isinstance(labels, list):
                raise ConfigError("source_labels must be a list")
            kwargs["source_labels"] = tuple(_scalar(label, "source_labels") for label in labels)
        for name in ("separator", "regex", "target_label", "replacement", "action"):
            if data.get(name) is not None:
                kwargs[name] = _scalar(data[name], name)
        modulus = data.get("modulus")
        if modulus is not None:
            if isinstance(modulus, bool) or not isinstance(modulus, int) or modulus < 0:
                raise ConfigError("modulus must be a non-negative integer")
            kwargs["modulus"] = modulus
        return cls(**kwargs)


def parse_relabel_configs(data: Any) -> list[RelabelConfig]:
    """Parse a list of relabel rules."""
    if data is None:
        return []
    if not isinstance(data, list):
        raise ConfigError(f"relabel configs must be a list, got {type(data).__name__}")
    return [RelabelConfig.from_dict(item) for item in data]


def _group(match: re.Match[str], name: str) -> str:
    if name.isdigit():
        index = int(name)
        if index > match.re.groups:
            return ""
        return match.group(index) or ""
    if name not in match.re.groupindex:
        return ""
    return match.group(name) or ""


def _expand(template: str, match: re.Match[str]) -> str:
    def substitute(reference: re.Match[str]) -> str:
        if reference.group(1):
            return "$"
        return _group(match, reference.group(2) or reference.group(3))

    return _TEMPLATE.sub(substitute, template)


def _set(labels: StringMap, name: str, value: str) -> None:
    if value:
        labels[name] = value
    else:
        labels.pop(name, None)


def process_labels(labels: Mapping[str, str], config: RelabelConfig) -> StringMap | None:
    """Apply one rule to the labels; None means the labels are to be dropped."""
    value = config.separator.join(labels.get(name, "") for name in config.source_labels)
    result = StringMap(labels)
    pattern = config.pattern
    action = config.action
    if action is RelabelAction.DROP:
        if pattern.fullmatch(value):
            return None
    elif action is RelabelAction.KEEP:
        if not pattern.fullmatch(value):
            return None
    elif action is RelabelAction.REPLACE:
        match = pattern.fullmatch(value)
        if match:
            target = _expand(config.target_label, match)
            if not _LABEL_NAME.fullmatch(target):
                result.pop(config.target_label, None)
            else:
                replaced = _expand(config.replacement, match)
                if replaced:
                    result[target] = replaced
                else:
                    result.pop(config.target_label, None)
    elif action is RelabelAction.HASHMOD:
        digest = hashlib.md5(value.encode("utf-8"), usedforsecurity=False).digest()
        _set(result, config.target_label, str(int.from_bytes(digest[8:], "big") % config.modulus))
    elif action is RelabelAction.LABELMAP:
        for name, label_value in sorted(labels.items()):
            match = pattern.fullmatch(name)
            if match:
                _set(result, _expand(config.replacement, match), label_value)
    elif action is RelabelAction.LABELDROP:
        for name in labels:
            if pattern.fullmatch(name):
                result.pop(name, None)
    elif action is RelabelAction.LABELKEEP:
        for name in labels:
            if not pattern.fullmatch(name):
                result.pop(name, None)
    return result


class EventRelabeler:
    """Pipeline stage applying relabel rules to event metadata and dropping events."""

    def __init__(
        self,
        configs: Iterable[RelabelConfig] = (),
        observer: Callable[[float], None] | None = None,
    ) -> None:
        self.configs = list(configs)
        self.observer = observer
        self.dropped_events_total = 0
        self.done = False

    def __str__(self) -> str:
        return "relabel"

    @classmethod
    def from_config(cls, data: Mapping[str, Any] | None) -> "EventRelabeler":
        """Build from a mapping holding ``EventRelabelConfigs`` (key case-insensitive)."""
        if data is not None and not isinstance(data, Mapping):
            raise ConfigError("failed to load configuration: expected a mapping")
        configs = None
        for key, value in (data or {}).items():
            if str(key).lower() == "eventrelabelconfigs":
                configs = value
        try:
            return cls(parse_relabel_configs(configs))
        except ConfigError as exc:
            raise ConfigError(f"failed to load configuration: {exc}") from exc

    def relabel_event(self, event: RawEvent) -> RawEvent | None:
        """Relabel the event's metadata in place; None if the event is to be dropped."""
        labels: StringMap | None = StringMap(event.metadata)
        for config in self.configs:
            labels = process_labels(labels, config)
            if labels is None:
                return None
        event.metadata = labels
        return event

    def run(self, events: Iterable[RawEvent]) -> Iterator[RawEvent]:
        """Yield relabelled events, skipping the dropped ones."""
        self.done = False
        for event in events:
            start = time.perf_counter()
            relabeled = self.relabel_event(event)
            if relabeled is None:
                _log.debug("dropping event %r", event)
                self.dropped_events_total += 1
                continue
            _log.debug("relabeled event %r", relabeled)
            yield relabeled
            if self.observer is not None:
                self.observer(time.perf_counter() - start)
        _log.info("input exhausted, finishing")
        self.done = True