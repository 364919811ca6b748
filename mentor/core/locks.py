"""Per-user mutexes serializing ledger mutation and local sync commits."""

import threading
from typing import Dict


class UserLocks:
    """
    Lazily created re-entrant lock per user.

    Held only around synchronous read-modify-write of local state, never
    across a network await, so it is safe to take from asyncio code.
    """

    def __init__(self):
        self._locks: Dict[str, threading.RLock] = {}
        self._guard = threading.Lock()

    def for_user(self, user_id: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(user_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[user_id] = lock
            return lock
