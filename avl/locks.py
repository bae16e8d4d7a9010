"""Per-node exclusive locks.

One mutex per node id, created lazily and never evicted (deleted nodes keep their
records), so unrelated nodes never serialize behind each other.
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from threading import Lock
from typing import Iterator

logger = logging.getLogger(__name__)


class NodeLocks:
    def __init__(self) -> None:
        self._guard = Lock()
        self._locks: dict[int, Lock] = {}

    def get(self, node_id: int) -> Lock:
        with self._guard:
            lock = self._locks.get(node_id)
            if lock is None:
                lock = Lock()
                self._locks[node_id] = lock
            return lock

    def acquire(self, node_id: int, timeout: float | None = None) -> bool:
        """Try to take a node's lock.

        ``timeout=None`` blocks, ``0`` never waits, anything else waits at most that long.
        """
        lock = self.get(node_id)
        if timeout is None:
            return lock.acquire()
        if timeout <= 0:
            return lock.acquire(blocking=False)
        return lock.acquire(timeout=timeout)

    def release(self, node_id: int) -> None:
        self.get(node_id).release()

    def locked(self, node_id: int) -> bool:
        return self.get(node_id).locked()

    @contextmanager
    def hold(self, node_id: int, timeout: float | None = None) -> Iterator[bool]:
        """Context manager for a node lock.

        Usage:
            with locks.hold(node_id, timeout=0) as acquired:
                if not acquired:
                    # Another operation owns the node; skip or fail
                    return
                # Mutate the node

        Yields:
            True if the lock was acquired, False otherwise
        """
        acquired = self.acquire(node_id, timeout)
        if not acquired:
            logger.debug(f"Could not acquire lock for node {node_id} - already held")
        try:
            yield acquired
        finally:
            if acquired:
                self.release(node_id)
