"""
Per-entity result caches shared by all workers.

A cached entry is either a value or the ``ABSENT`` sentinel ("confirmed
absent", e.g. a site with no linked group). Fetch failures are never
cached, so a transient fault is retried on the next access. Entries live
for the whole run.
"""
import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, Hashable, Optional

from .models import AuditStats

logger = logging.getLogger(__name__)


class _Absent:
    """Sentinel for a lookup that confirmed the entity does not exist."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return 'ABSENT'

    def __bool__(self) -> bool:
        return False


ABSENT = _Absent()


@dataclass(frozen=True)
class CacheEntry:
    """A cached outcome: ``value`` is the fetched value or ``ABSENT``."""
    key: Hashable
    value: Any

    @property
    def is_absent(self) -> bool:
        return self.value is ABSENT


class ResultCache:
    """
    Memoize ``fetch_fn`` results per key.

    Each key has its own lock, so concurrent callers for the same key wait
    for the first fetch instead of issuing their own, while callers for
    other keys proceed in parallel.
    """

    def __init__(self, name: str, stats: Optional[AuditStats] = None):
        self.name = name
        self.stats = stats
        self._entries: Dict[Hashable, CacheEntry] = {}
        self._key_locks: Dict[Hashable, threading.Lock] = {}
        self._lock = threading.Lock()
        self.misses = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: Hashable) -> bool:
        with self._lock:
            return key in self._entries

    def peek(self, key: Hashable) -> Optional[CacheEntry]:
        with self._lock:
            return self._entries.get(key)

    def _key_lock(self, key: Hashable) -> threading.Lock:
        with self._lock:
            lock = self._key_locks.get(key)
            if lock is None:
                lock = self._key_locks[key] = threading.Lock()
            return lock

    def _hit(self, entry: CacheEntry) -> Any:
        if self.stats is not None:
            self.stats.increment('cache_hits')
        return entry.value

    def get_or_fetch(self, key: Hashable, fetch_fn: Callable[[], Any]) -> Any:
        """
        Return the cached outcome for ``key``, fetching it on a miss.

        ``fetch_fn`` may return ``ABSENT`` to cache a negative result.
        Exceptions from ``fetch_fn`` propagate and leave no entry behind.
        """
        entry = self.peek(key)
        if entry is not None:
            return self._hit(entry)

        with self._key_lock(key):
            # Another worker may have filled it while we waited
            entry = self.peek(key)
            if entry is not None:
                return self._hit(entry)

            value = fetch_fn()
            with self._lock:
                self._entries[key] = CacheEntry(key, value)
                self.misses += 1
            if value is ABSENT:
                logger.debug(f"{self.name} cache: {key} confirmed absent")
            return value

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._key_locks.clear()


class ResultCaches:
    """The per-entity caches of one run."""

    def __init__(self, stats: Optional[AuditStats] = None):
        self.resources = ResultCache('resources', stats)
        self.permissions = ResultCache('permissions', stats)
        self.groups = ResultCache('groups', stats)
        self.group_members = ResultCache('group_members', stats)

    def sizes(self) -> Dict[str, int]:
        return {
            'resources': len(self.resources),
            'permissions': len(self.permissions),
            'groups': len(self.groups),
            'group_members': len(self.group_members),
        }
