import threading
from contextlib import contextmanager
from typing import Hashable, Iterator, Optional

from .exceptions import ConcurrencyConflictError


class _Entry:
    __slots__ = ("lock", "users")

    def __init__(self):
        self.lock = threading.Lock()
        self.users = 0


class KeyedLock:
    """
    One mutex per key, acquired with a bounded wait.

    Entries are created on first use and dropped once no thread holds or waits
    on them, so the table only grows with the number of keys in flight.
    """

    def __init__(self, timeout: float = 5.0):
        self.timeout = timeout
        self._locks: dict[Hashable, _Entry] = {}
        self._guard = threading.Lock()

    def active_keys(self) -> int:
        with self._guard:
            return len(self._locks)

    def _checkout(self, key: Hashable) -> _Entry:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = self._locks[key] = _Entry()
            entry.users += 1
            return entry

    def _checkin(self, key: Hashable, entry: _Entry) -> None:
        with self._guard:
            entry.users -= 1
            if entry.users == 0:
                del self._locks[key]

    @contextmanager
    def hold(self, key: Hashable, timeout: Optional[float] = None) -> Iterator[None]:
        wait = self.timeout if timeout is None else timeout
        entry = self._checkout(key)
        try:
            if not entry.lock.acquire(timeout=wait):
                raise ConcurrencyConflictError(f"Timed out after {wait}s waiting for lock on {key}")
            try:
                yield
            finally:
                entry.lock.release()
        finally:
            self._checkin(key, entry)
