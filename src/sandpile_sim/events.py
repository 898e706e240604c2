from __future__ import annotations

from collections import Counter
from typing import Dict, Tuple, Union

import numpy as np

Number = Union[int, float]


class EventCounter:
    """Histogram of observed values: value -> number of times it occurred."""

    def __init__(self) -> None:
        self._events: Counter = Counter()

    def add_event(self, value: Number) -> None:
        self._events[value] += 1

    def get_events(self) -> Dict[Number, int]:
        """Events sorted by value."""
        return dict(sorted(self._events.items()))

    @property
    def total(self) -> int:
        return sum(self._events.values())

    def clear(self) -> None:
        self._events.clear()

    def to_arrays(self) -> Tuple[np.ndarray, np.ndarray]:
        """Return ``(values, counts)`` as arrays, sorted by value."""
        events = self.get_events()
        values = np.fromiter(events.keys(), dtype=np.float64, count=len(events))
        counts = np.fromiter(events.values(), dtype=np.int64, count=len(events))
        return values, counts

    def __len__(self) -> int:
        return len(self._events)


__all__ = ["EventCounter"]
