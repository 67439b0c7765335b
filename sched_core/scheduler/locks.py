"""
EXECUTION_LOCKS
===============

In-memory per-task mutual exclusion with automatic expiry.

At any instant there is at most one live (non-expired) lock per task id.
Expired entries are treated as absent on the next ``try_acquire`` (lazy
expiry) and can also be dropped in bulk with ``sweep()``, so the registry
heals itself even when ``release`` is never called.

A run that takes longer than the timeout loses its lock and may overlap with
the next run of the same task. The dispatcher logs that case loudly; the
timeout is configurable via ``scheduler.lock_timeout_seconds``.

Usage::

    locks = ExecutionLockRegistry(timeout_seconds=120)
    if locks.try_acquire(task_id):
        ...
        locks.release(task_id)
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

DEFAULT_LOCK_TIMEOUT_SECONDS = 120.0


@dataclass(frozen=True)
class ExecutionLock:
    task_id: str
    acquired_at: float
    expires_at: float

    def expired(self, now: float) -> bool:
        return now >= self.expires_at

    def to_dict(self, now: float) -> Dict:
        return {
            "task_id": self.task_id,
            "held_seconds": round(now - self.acquired_at, 3),
            "expires_in_seconds": round(max(self.expires_at - now, 0.0), 3),
        }


class ExecutionLockRegistry:
    """Mutex-guarded TTL map from task id to lock."""

    def __init__(
        self,
        timeout_seconds: float = DEFAULT_LOCK_TIMEOUT_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be positive")
        self.timeout_seconds = timeout_seconds
        self._clock = clock
        self._locks: Dict[str, ExecutionLock] = {}
        self._mutex = threading.Lock()

    def try_acquire(self, task_id: str) -> bool:
        """Acquire the lock for ``task_id``. False if a live lock is held."""
        key = str(task_id)
        with self._mutex:
            now = self._clock()
            current = self._locks.get(key)
            if current is not None:
                if not current.expired(now):
                    return False
                logger.warning(
                    "Reclaiming expired lock for task %s (held %.1fs, never released)",
                    key, now - current.acquired_at,
                )
            self._locks[key] = ExecutionLock(key, now, now + self.timeout_seconds)
            return True

    def release(self, task_id: str, expected: Optional[ExecutionLock] = None) -> bool:
        """
        Release the lock. Returns False if nothing was held.

        With ``expected``, release only if that exact lock is still the one
        held, so a late release cannot drop a newer holder's lock.
        """
        key = str(task_id)
        with self._mutex:
            current = self._locks.get(key)
            if current is None or (expected is not None and current != expected):
                return False
            del self._locks[key]
            return True

    def is_locked(self, task_id: str) -> bool:
        with self._mutex:
            current = self._locks.get(str(task_id))
            return current is not None and not current.expired(self._clock())

    def get(self, task_id: str) -> Optional[ExecutionLock]:
        with self._mutex:
            current = self._locks.get(str(task_id))
            if current is None or current.expired(self._clock()):
                return None
            return current

    def sweep(self) -> List[str]:
        """Drop expired entries; returns the task ids removed."""
        with self._mutex:
            now = self._clock()
            expired = [k for k, lock in self._locks.items() if lock.expired(now)]
            for key in expired:
                del self._locks[key]
        for key in expired:
            logger.warning("Lock for task %s expired without release", key)
        return expired

    def active_locks(self) -> List[Dict]:
        with self._mutex:
            now = self._clock()
            return [lock.to_dict(now) for lock in self._locks.values() if not lock.expired(now)]

    def __len__(self) -> int:
        return len(self.active_locks())
