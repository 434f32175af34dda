#lifecycle_engine\core\locks.py

"""Per-customer serialization of mutating operations."""

from contextlib import contextmanager
from threading import Lock
from typing import Dict, Hashable, Iterator, Optional

from lifecycle_engine.core.errors import Conflict


class _Entry:
    def __init__(self):
        self.lock = Lock()
        self.holders = 0


class KeyedLock:
    """
    One exclusive section per key.

    Entries are reference counted so the map does not grow with every
    customer ever touched.
    """

    def __init__(self):
        self._entries: Dict[Hashable, _Entry] = {}
        self._guard = Lock()

    @contextmanager
    def hold(self, key: Hashable, timeout: Optional[float] = None) -> Iterator[None]:
        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                entry = self._entries[key] = _Entry()
            entry.holders += 1

        acquired = entry.lock.acquire(timeout=-1 if timeout is None else timeout)
        try:
            if not acquired:
                raise Conflict(f"Another operation is in progress for {key}")
            yield
        finally:
            if acquired:
                entry.lock.release()
            with self._guard:
                entry.holders -= 1
                if entry.holders == 0:
                    self._entries.pop(key, None)

    def is_held(self, key: Hashable) -> bool:
        with self._guard:
            entry = self._entries.get(key)
            return entry is not None and entry.lock.locked()

    def __repr__(self) -> str:
        return f"<KeyedLock(keys={len(self._entries)})>"
