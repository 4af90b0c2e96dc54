"""Event types flowing through the processing pipeline."""

from __future__ import annotations

import dataclasses
import enum
from dataclasses import dataclass, field

from slokit.stringmap import StringMap


@dataclass(frozen=True)
class SloClassification:
    """SLO domain, class and application an event belongs to."""

    domain: str = ""
    class_: str = ""
    app: str = ""

    def copy(self) -> "SloClassification":
        return dataclasses.replace(self)

    def __str__(self) -> str:
        return str(StringMap(slo_domain=self.domain, slo_class=self.class_, slo_app=self.app))


class EventResult(enum.Enum):
    """Outcome of an SLO event."""

    SUCCESS = "success"
    FAIL = "fail"

    def __str__(self) -> str:
        return self.value


@dataclass
class RawEvent:
    """An observed event with its metadata, quantity and optional classification."""

    metadata: StringMap = field(default_factory=StringMap)
    quantity: float = 1.0
    slo_classification: SloClassification | None = None
    key: str = ""

    def __post_init__(self) -> None:
        if not isinstance(self.metadata, StringMap):
            self.metadata = StringMap(self.metadata or {})

    def is_classified(self) -> bool:
        """True when the event carries a full SLO classification."""
        c = self.slo_classification
        return c is not None and bool(c.domain and c.class_ and c.app)

    def update_slo_classification(self, classification: SloClassification) -> None:
        self.slo_classification = classification.copy()


@dataclass
class SloEvent:
    """An event evaluated against an SLO rule."""

    domain: str = ""
    class_: str = ""
    app: str = ""
    result: EventResult = EventResult.SUCCESS
    metadata: StringMap = field(default_factory=StringMap)
    quantity: float = 1.0
    key: str = ""