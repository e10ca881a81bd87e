from __future__ import annotations

import threading
import uuid
from collections.abc import Iterator
from contextlib import contextmanager


class ProjectLockRegistry:
    """Re-entrant mutual exclusion scoped to a single project id."""

    def __init__(self) -> None:
        self._locks: dict[uuid.UUID, threading.RLock] = {}
        self._guard = threading.Lock()

    def lock_for(self, project_id: uuid.UUID) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(project_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[project_id] = lock
            return lock

    @contextmanager
    def hold(self, project_id: uuid.UUID) -> Iterator[None]:
        lock = self.lock_for(project_id)
        with lock:
            yield


project_locks = ProjectLockRegistry()
