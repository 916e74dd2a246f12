"""
Month View Cache

A bounded least-recently-used cache of computed month views, keyed by
(month, ledger input fingerprint). Any change to the inputs changes the
fingerprint, so stale views are never served; they simply age out.

The cache is an explicit object owned by whoever computes views. There is
no module-level instance.
"""

from collections import OrderedDict
from typing import Callable, Optional

from zerosum.ledger.engine import MonthView


class MonthViewCache:
    def __init__(self, capacity: int = 12):
        if capacity < 1:
            raise ValueError("Cache capacity must be at least 1")
        self.capacity = capacity
        self._entries: "OrderedDict[tuple[str, str], MonthView]" = OrderedDict()
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: tuple[str, str]) -> bool:
        return key in self._entries

    def get(self, month: str, fingerprint: str) -> Optional[MonthView]:
        key = (month, fingerprint)
        view = self._entries.get(key)
        if view is None:
            self.misses += 1
            return None
        self._entries.move_to_end(key)
        self.hits += 1
        return view

    def put(self, month: str, fingerprint: str, view: MonthView) -> None:
        key = (month, fingerprint)
        self._entries[key] = view
        self._entries.move_to_end(key)
        while len(self._entries) > self.capacity:
            self._entries.popitem(last=False)

    def get_or_compute(self, month: str, fingerprint: str, compute: Callable[[], MonthView]) -> MonthView:
        view = self.get(month, fingerprint)
        if view is None:
            view = compute()
            self.put(month, fingerprint, view)
        return view

    def clear(self) -> None:
        self._entries.clear()
        self.hits = 0
        self.misses = 0
