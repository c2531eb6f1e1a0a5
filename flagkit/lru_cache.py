"""A set of recently seen values with least-recently-used eviction."""

from collections import OrderedDict
from collections.abc import Hashable


class LruCache:
    """Remembers up to ``capacity`` values, discarding the least recently used first."""

    def __init__(self, capacity: int) -> None:
        if capacity < 0:
            raise ValueError("capacity must not be negative")
        self._capacity = capacity
        self._values: "OrderedDict[Hashable, None]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._values)

    def __contains__(self, value: object) -> bool:
        return value in self._values

    def clear(self) -> None:
        """Forget every stored value."""
        self._values.clear()

    def add(self, value: Hashable) -> bool:
        """Store a value.

        Returns True (and marks the value as recently used) if it was already
        present, or False if it was newly added.
        """
        if self._capacity == 0:
            return False
        if value in self._values:
            self._values.move_to_end(value)
            return True
        while len(self._values) >= self._capacity:
            self._values.popitem(last=False)
        self._values[value] = None
        return False