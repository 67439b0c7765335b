"""
Management-subject allow-list for write tools.

The list comes from a ``ManagementSource`` (e.g. the ``management_subjects``
table) and is cached for ``cache_seconds``. When the source raises, the
fixed fallback list is used for that check instead of failing open or
crashing the run.
"""

import logging
import threading
import time
from typing import Callable, FrozenSet, Iterable, Optional

logger = logging.getLogger(__name__)


def _normalize(subject: str) -> str:
    return subject.strip().casefold()


class ManagementAllowList:

    def __init__(
        self,
        source=None,
        fallback: Iterable[str] = (),
        cache_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.source = source
        self.fallback: FrozenSet[str] = frozenset(_normalize(s) for s in fallback)
        self.cache_seconds = cache_seconds
        self._clock = clock
        self._cached: Optional[FrozenSet[str]] = None
        self._cached_at = 0.0
        self._lock = threading.Lock()

    def subjects(self) -> FrozenSet[str]:
        """Current allow-list (normalized)."""
        with self._lock:
            now = self._clock()
            if self._cached is not None and now - self._cached_at < self.cache_seconds:
                return self._cached

        if self.source is None:
            return self.fallback

        try:
            loaded = frozenset(_normalize(s) for s in self.source.list_management_subjects())
        except Exception as e:
            logger.warning("Management source unavailable (%s); using fallback allow-list", e)
            return self.fallback

        with self._lock:
            self._cached = loaded
            self._cached_at = self._clock()
        return loaded

    def invalidate(self) -> None:
        with self._lock:
            self._cached = None

    def is_authorized(self, subject: Optional[str]) -> bool:
        if not subject:
            return False
        return _normalize(subject) in self.subjects()
