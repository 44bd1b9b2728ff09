"""
Per-entity advisory locks.

Used where a sequence of store operations must not interleave for the same
entity (payment reconciliation keyed by external reference). Acquisition always
has a bounded wait; a timeout surfaces as `DependencyUnavailable`.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Hashable, Iterator

from gfcity.domain.errors import DependencyUnavailable


class KeyedLock:
    def __init__(self, *, timeout_seconds: float = 5.0):
        self._timeout_seconds = float(timeout_seconds)
        self._guard = threading.Lock()
        # key -> [lock, holders+waiters]
        self._locks: dict[Hashable, list] = {}

    @contextmanager
    def hold(self, key: Hashable, *, timeout_seconds: float | None = None) -> Iterator[None]:
        timeout = self._timeout_seconds if timeout_seconds is None else float(timeout_seconds)
        with self._guard:
            slot = self._locks.setdefault(key, [threading.Lock(), 0])
            slot[1] += 1
        acquired = slot[0].acquire(timeout=timeout)
        try:
            if not acquired:
                raise DependencyUnavailable(f"timed out after {timeout:.1f}s waiting for lock on {key!r}")
            yield
        finally:
            if acquired:
                slot[0].release()
            with self._guard:
                slot[1] -= 1
                if slot[1] == 0:
                    self._locks.pop(key, None)

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)
