"""Concurrent, rate-limited and cached retrieval of issue changelogs."""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Iterable, Optional

from sprint_engine.config import DEFAULT_LATE_STAGE_STATUSES
from sprint_engine.errors import SprintEngineError
from sprint_engine.models import IssueChangelog

logger = logging.getLogger(__name__)


class RateLimiter:
    """Spaces calls at least ``min_interval`` seconds apart.

    A single "next allowed time" slot shared by all threads; each caller
    reserves the next slot under the lock and sleeps outside it.
    """

    def __init__(self, min_interval: float, clock=time.monotonic, sleep=time.sleep):
        self.min_interval = max(0.0, min_interval)
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._next_slot = 0.0

    def acquire(self) -> float:
        """Wait for a slot. Returns the time slept, in seconds."""
        with self._lock:
            now = self._clock()
            wait = max(0.0, self._next_slot - now)
            self._next_slot = max(now, self._next_slot) + self.min_interval

        if wait > 0:
            self._sleep(wait)
        return wait


class _KeyLock:
    """Per-key load lock, dropped once no thread holds or waits on it."""

    def __init__(self):
        self.lock = threading.Lock()
        self.users = 0


class ChangelogCache:
    """Issue changelogs cached by issue key with a time-to-live.

    Stale entries are reloaded lazily on the next read. At most one load
    per key runs at a time; concurrent readers of that key wait for it.
    """

    def __init__(self, ttl: timedelta = timedelta(hours=2), clock=time.monotonic):
        self.ttl_seconds = max(60.0, ttl.total_seconds())
        self._clock = clock
        self._lock = threading.Lock()
        self._entries = {}
        self._key_locks = {}
        self.hits = 0
        self.misses = 0
        self.loads = 0
        self.evictions = 0

    def _fresh(self, key) -> Optional[IssueChangelog]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        loaded_at, value = entry
        if loaded_at + self.ttl_seconds > self._clock():
            return value
        return None

    def get_or_load(self, key: str, loader: Callable[[str], IssueChangelog]) -> IssueChangelog:
        """Return the cached changelog, loading it when missing or stale.

        Loader exceptions propagate and nothing is cached.
        """
        with self._lock:
            cached = self._fresh(key)
            if cached is not None:
                self.hits += 1
                return cached
            key_lock = self._key_locks.get(key)
            if key_lock is None:
                key_lock = self._key_locks[key] = _KeyLock()
            key_lock.users += 1

        try:
            with key_lock.lock:
                with self._lock:
                    cached = self._fresh(key)
                    if cached is not None:
                        self.hits += 1
                        return cached
                    self.misses += 1

                value = loader(key)

                with self._lock:
                    self._entries[key] = (self._clock(), value)
                    self.loads += 1
                return value
        finally:
            with self._lock:
                key_lock.users -= 1
                if key_lock.users == 0:
                    self._key_locks.pop(key, None)

    def pending_loads(self) -> int:
        """Number of keys with a load running or waited on."""
        with self._lock:
            return len(self._key_locks)

    def evict(self, key: str) -> bool:
        """Drop one entry. Returns True if something was removed."""
        with self._lock:
            removed = self._entries.pop(key, None) is not None
            if removed:
                self.evictions += 1
            return removed

    def prewarm(self, key: str, value: IssueChangelog):
        if key is None or value is None:
            return
        with self._lock:
            self._entries[key] = (self._clock(), value)

    def stats(self) -> dict:
        with self._lock:
            return {
                "hits": self.hits,
                "misses": self.misses,
                "loads": self.loads,
                "evictions": self.evictions,
                "size": len(self._entries),
            }


@dataclass
class FetchResult:
    """Outcome of loading one issue's changelog: a changelog or an error."""

    key: str
    changelog: Optional[IssueChangelog] = None
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.changelog is not None


class ChangelogFetchCoordinator:
    """Loads changelogs for batches of tickets on a shared worker pool.

    Created once and injected; owns the executor unless one is passed in.
    """

    def __init__(self, reconstructor, cache: ChangelogCache, max_workers: int = 4,
                 executor: ThreadPoolExecutor = None,
                 late_stage_statuses=DEFAULT_LATE_STAGE_STATUSES):
        self.reconstructor = reconstructor
        self.cache = cache
        self.late_stage_statuses = frozenset(s.upper() for s in late_stage_statuses)
        self._owns_executor = executor is None
        self.executor = executor or ThreadPoolExecutor(
            max_workers=max(1, max_workers), thread_name_prefix="changelog"
        )

    def close(self):
        if self._owns_executor:
            self.executor.shutdown(wait=True)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def fetch(self, issue_key: str) -> FetchResult:
        """Load one changelog through the cache; failures become FetchResult errors."""
        try:
            changelog = self.cache.get_or_load(issue_key, self.reconstructor.load)
        except SprintEngineError as e:
            logger.warning(f"Changelog unavailable for {issue_key}: {e}")
            return FetchResult(issue_key, error=e)
        return FetchResult(issue_key, changelog=changelog)

    def fetch_many(self, issue_keys: Iterable[str]) -> dict:
        """Load changelogs in parallel.

        Returns:
            Dict mapping issue key to FetchResult, in completion order
        """
        keys = list(dict.fromkeys(issue_keys))
        if not keys:
            return {}

        results = {}
        futures = {self.executor.submit(self.fetch, key): key for key in keys}
        for future in as_completed(futures):
            result = future.result()
            results[result.key] = result
        return results

    def changelog_lookup(self, issue_keys: Iterable[str]) -> Callable[[str], Optional[IssueChangelog]]:
        """Prefetch changelogs and return a key -> changelog-or-None lookup."""
        results = self.fetch_many(issue_keys)

        def lookup(key: str) -> Optional[IssueChangelog]:
            result = results.get(key) or self.fetch(key)
            return result.changelog if result.ok else None

        return lookup

    def is_done_before_sprint(self, changelog: IssueChangelog, sprint_start: datetime) -> bool:
        status = changelog.status_before(sprint_start)
        return status is not None and status.upper() in self.late_stage_statuses

    def filter_excluding_pre_sprint_done(self, tickets: Iterable, sprint_start: datetime) -> tuple:
        """Split tickets into those kept and those already done before the sprint.

        A ticket whose changelog cannot be loaded is kept: its status at
        sprint start is unknown, so it is not excluded.

        Returns:
            (kept tickets, flagged tickets); order follows fetch completion
        """
        by_key = {t.key: t for t in tickets}
        kept = []
        flagged = []

        for key, result in self.fetch_many(by_key).items():
            ticket = by_key[key]
            if not result.ok:
                kept.append(ticket)
                continue
            if self.is_done_before_sprint(result.changelog, sprint_start):
                ticket.done_before_sprint = True
                flagged.append(ticket)
            else:
                kept.append(ticket)

        if flagged:
            logger.info(f"{len(flagged)} tickets were done before sprint start")
        return kept, flagged
