"""
Per-key mutual exclusion inside one process.

Used to serialize token renewal per tax id and issuance per sale. Cross-process
safety for issuance comes from the database constraint on open invoices.
"""

from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field


@dataclass
class _Entry:
    lock: threading.Lock = field(default_factory=threading.Lock)
    users: int = 0


class KeyedLock:
    """
    A ``threading.Lock`` per key, alive only while someone holds or waits on it.

    Entries are reference counted under ``_guard`` and dropped when the last
    user leaves, so one entry per sale does not pile up over the process life.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, _Entry] = {}

    def _acquire_entry(self, key: str) -> _Entry:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = self._locks[key] = _Entry()
            entry.users += 1
            return entry

    def _release_entry(self, key: str, entry: _Entry) -> None:
        with self._guard:
            entry.users -= 1
            if entry.users == 0:
                del self._locks[key]

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        entry = self._acquire_entry(key)
        try:
            with entry.lock:
                yield
        finally:
            self._release_entry(key, entry)

    def is_held(self, key: str) -> bool:
        entry = self._locks.get(key)
        return bool(entry and entry.lock.locked())

    def __len__(self) -> int:
        return len(self._locks)
