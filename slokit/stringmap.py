"""A string-to-string mapping with the helpers used for event metadata and labels."""

from __future__ import annotations

from typing import Iterable, Mapping


class StringMap(dict):
    """Dictionary of string keys and values with non-mutating helpers."""

    @classmethod
    def from_labels(cls, labels: Iterable[tuple[str, str]] | None) -> "StringMap":
        """Build a map from an iterable of ``(name, value)`` label pairs."""
        return cls(labels or ())

    def copy(self) -> "StringMap":
        return StringMap(self)

    def merge(self, other: Mapping[str, str] | None) -> "StringMap":
        """Return a new map with ``other`` merged in; ``other`` wins on conflicts."""
        merged = StringMap(self)
        merged.update(other or {})
        return merged

    def new_with(self, key: str, value: str) -> "StringMap":
        """Return a copy with ``key`` set to ``value``."""
        return self.merge({key: value})

    def add_keys(self, *args: str) -> None:
        """Add the given keys in place, each with an empty value."""
        for key in args:
            self[key] = ""

    def sorted_keys(self) -> list[str]:
        return sorted(self)

    def values_by_keys(self, keys: Iterable[str]) -> list[str]:
        """Return the values of the given keys, in order, skipping missing ones."""
        return [self[key] for key in keys if key in self]

    def matches(self, other: Mapping[str, str]) -> bool:
        """True if every item of this map is present with the same value in ``other``."""
        if len(self) > len(other):
            return False
        return all(key in other and other[key] == value for key, value in self.items())

    def lowercase(self) -> "StringMap":
        return StringMap((key.lower(), value.lower()) for key, value in self.items())

    def select(self, keys: Iterable[str]) -> "StringMap":
        """Return a map of only the given keys that are present."""
        return StringMap((key, self[key]) for key in keys if key in self)

    def without(self, keys: Iterable[str] | None) -> "StringMap":
        """Return a map without the given keys; the map itself if there are none."""
        keys = list(keys or ())
        if not keys:
            return self
        dropped = set(keys)
        return StringMap((key, value) for key, value in self.items() if key not in dropped)

    def as_labels(self) -> list[tuple[str, str]]:
        """Return the items as ``(name, value)`` label pairs sorted by name."""
        return sorted(self.items())

    def __str__(self) -> str:
        return ",".join(f'{key}="{self[key]}"' for key in self.sorted_keys())