from __future__ import annotations

from collections import OrderedDict
from collections.abc import ItemsView
from typing import Generic, TypeVar

K = TypeVar("K")


class BoundedCounterMap(Generic[K]):
    """Label-keyed counters that evict the least recently bumped key when full.

    The cap bounds the number of exported label series. An evicted series
    disappears from ``/metrics`` and restarts from zero if seen again, which
    scrapers read as a counter reset; size the cap above the expected label
    cardinality.
    """

    def __init__(self, max_keys: int):
        self._max_keys = max(1, int(max_keys))
        self._counts: OrderedDict[K, int] = OrderedDict()

    def increment(self, key: K, amount: int = 1) -> int:
        is_new = key not in self._counts
        value = self._counts.get(key, 0) + int(amount)
        self._counts[key] = value
        self._counts.move_to_end(key)
        if is_new and len(self._counts) > self._max_keys:
            self._counts.popitem(last=False)
        return value

    def get(self, key: K, default: int = 0) -> int:
        return self._counts.get(key, default)

    def items(self) -> ItemsView[K, int]:
        return self._counts.items()

    def to_dict(self) -> dict[K, int]:
        return dict(self._counts)

    def __len__(self) -> int:
        return len(self._counts)
