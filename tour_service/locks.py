import logging
import threading
from contextlib import contextmanager
from typing import Dict, Hashable

from .config import settings
from .errors import Stale

logger = logging.getLogger("tour_service")


class _Entry:
    __slots__ = ("lock", "users")

    def __init__(self):
        self.lock = threading.RLock()
        # Holders plus waiters; the entry is dropped when this reaches zero
        self.users = 0


class KeyedLocks:
    """
    One re-entrant lock per key (booking id, agent id, ...).

    An entry only exists while some thread holds or waits for its key.
    Locks are process-local. Across processes, the PostgreSQL advisory lock
    and the booking version column take over.
    """

    def __init__(self, name: str):
        self.name = name
        self._locks: Dict[Hashable, _Entry] = {}
        self._guard = threading.Lock()

    def __len__(self) -> int:
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
    def hold(self, key: Hashable, timeout: float | None = None):
        timeout = settings.LOCK_TIMEOUT_SECONDS if timeout is None else timeout
        entry = self._checkout(key)
        try:
            if not entry.lock.acquire(timeout=timeout):
                logger.warning(f"Timed out waiting for {self.name} lock {key} after {timeout}s")
                raise Stale("This tour is being updated by someone else. Please try again.")
            try:
                yield
            finally:
                entry.lock.release()
        finally:
            self._checkin(key, entry)


booking_locks = KeyedLocks("booking")
agent_locks = KeyedLocks("agent")
