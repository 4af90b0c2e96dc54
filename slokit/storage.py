"""In-memory containers keeping the most recent items."""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from collections import deque
from typing import Any, Iterator


class Container(ABC):
    """A collection that items can be added to and streamed from."""

    @abstractmethod
    def add(self, item: Any) -> None:
        """Add an item."""

    @abstractmethod
    def stream(self) -> Iterator[Any]:
        """Iterate over the items, most recent first."""

    @abstractmethod
    def __len__(self) -> int:
        """Number of items held."""


class CappedContainer(Container):
    """Thread-safe container that drops the oldest items beyond its capacity."""

    def __init__(self, capacity: int) -> None:
        self._capacity = capacity
        self._items: deque[Any] = deque()
        self._lock = threading.Lock()

    @property
    def capacity(self) -> int:
        return self._capacity

    def add(self, item: Any) -> None:
        with self._lock:
            self._items.appendleft(item)
            if len(self._items) > self._capacity:
                self._items.pop()

    def stream(self) -> Iterator[Any]:
        with self._lock:
            snapshot = list(self._items)
        return iter(snapshot)

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)