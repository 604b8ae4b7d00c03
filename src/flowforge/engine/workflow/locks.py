from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager


class InstanceLocks:
    """One re-entrant lock per instance id.

    Re-entrant because completing a task advances the instance while the task
    manager already holds its lock. A lock only lives while some thread holds
    or waits for it.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.RLock] = {}
        self._users: dict[str, int] = {}

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    @contextmanager
    def hold(self, instance_id: str) -> Iterator[None]:
        with self._guard:
            lock = self._locks.get(instance_id)
            if lock is None:
                lock = self._locks[instance_id] = threading.RLock()
            self._users[instance_id] = self._users.get(instance_id, 0) + 1
        try:
            with lock:
                yield
        finally:
            with self._guard:
                self._users[instance_id] -= 1
                if not self._users[instance_id]:
                    del self._users[instance_id]
                    del self._locks[instance_id]
