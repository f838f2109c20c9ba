from __future__ import annotations

import threading
from typing import Generic, TypeVar

T = TypeVar("T")


class LatestValue(Generic[T]):
    """Holds only the most recent value written by a single producer.

    Readers always see the last write, never a queue of pending values, so a
    reader may pair fresh data from one source with stale data from another.
    """

    def __init__(self, initial: T) -> None:
        self._initial = initial
        self._value = initial
        self._lock = threading.Lock()

    def set(self, value: T) -> None:
        with self._lock:
            self._value = value

    def get(self) -> T:
        with self._lock:
            return self._value

    def clear(self) -> None:
        self.set(self._initial)
