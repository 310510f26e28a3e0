"""Per-user read-modify-write with single-flight locking and bounded retries."""

import logging
import threading
from contextlib import contextmanager
from typing import Callable, Iterator, Optional, TypeVar

from .errors import ConflictingWriteError, TransientWriteError
from .models import User
from .store import LedgerStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


class KeyedLock:
    """One lock per key, created on demand and dropped once nobody holds or waits on it."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}
        self._waiters: dict[str, int] = {}

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault(key, threading.Lock())
            self._waiters[key] = self._waiters.get(key, 0) + 1
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                self._waiters[key] -= 1
                if self._waiters[key] == 0:
                    del self._waiters[key]
                    del self._locks[key]


class LedgerWriter:
    def __init__(self, store: LedgerStore, max_retries: int = 3, locks: Optional[KeyedLock] = None):
        self.store = store
        self.max_retries = max_retries
        self.locks = locks or KeyedLock()

    def mutate(self, user_id: str, apply: Callable[[User], T]) -> tuple[User, T]:
        """
        Apply ``apply`` to a fresh copy of the user and commit it.

        Errors raised by ``apply`` propagate with nothing written. On a
        version conflict the whole cycle is re-run against the latest
        record, up to ``max_retries`` attempts in total.
        """
        last_error: Optional[ConflictingWriteError] = None
        with self.locks.hold(user_id):
            for attempt in range(1, self.max_retries + 1):
                candidate = self.store.get(user_id)
                result = apply(candidate)
                try:
                    stored = self.store.put(candidate)
                except ConflictingWriteError as e:
                    logger.warning(f"Write conflict on user {user_id}, retrying... (attempt {attempt}/{self.max_retries})")
                    last_error = e
                    continue
                return stored, result

        logger.error(f"Giving up on user {user_id} after {self.max_retries} conflicting writes")
        raise TransientWriteError(
            f"User {user_id} is being modified concurrently; try again later"
        ) from last_error
