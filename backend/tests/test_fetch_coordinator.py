"""Tests for the rate limiter, changelog cache and fetch coordinator."""

import threading
import pytest
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from unittest.mock import Mock

from sprint_engine.changelog import ChangelogReconstructor
from sprint_engine.errors import ChangelogError, TransportFailure
from sprint_engine.fetch import ChangelogCache, ChangelogFetchCoordinator, RateLimiter
from sprint_engine.jira_gateway import JiraHistoryGateway
from sprint_engine.models import IssueChangelog, StatusChange, Ticket


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


class TestRateLimiter:
    """Test request spacing."""

    def test_first_call_does_not_wait(self):
        sleep = Mock()
        limiter = RateLimiter(0.5, clock=FakeClock(), sleep=sleep)

        assert limiter.acquire() == 0.0
        sleep.assert_not_called()

    def test_back_to_back_calls_are_spaced(self):
        """Each caller reserves the next free slot."""
        clock = FakeClock()
        sleep = Mock()
        limiter = RateLimiter(0.5, clock=clock, sleep=sleep)

        waits = [limiter.acquire() for _ in range(3)]

        assert waits == [0.0, 0.5, 1.0]
        assert sleep.call_count == 2

    def test_concurrent_callers_get_distinct_slots(self):
        """Threads racing for the limiter are each given their own slot."""
        clock = FakeClock()
        slept = []
        limiter = RateLimiter(0.5, clock=clock, sleep=slept.append)
        workers = 8
        barrier = threading.Barrier(workers)

        def call():
            barrier.wait(timeout=2)
            return limiter.acquire()

        with ThreadPoolExecutor(max_workers=workers) as pool:
            waits = list(pool.map(lambda _: call(), range(workers)))

        slots = sorted(clock.now + wait for wait in waits)
        assert len(set(slots)) == workers
        assert all(later - earlier >= 0.5 for earlier, later in zip(slots, slots[1:]))
        assert sorted(slept) == sorted(w for w in waits if w > 0)

    def test_no_wait_after_idle_period(self):
        clock = FakeClock()
        limiter = RateLimiter(0.5, clock=clock, sleep=Mock())
        limiter.acquire()
        clock.now += 10

        assert limiter.acquire() == 0.0


class TestChangelogCache:
    """Test TTL caching and single-flight loading."""

    def test_hit_after_load(self):
        cache = ChangelogCache(clock=FakeClock())
        loader = Mock(return_value=IssueChangelog.empty("SAG-1"))

        first = cache.get_or_load("SAG-1", loader)
        second = cache.get_or_load("SAG-1", loader)

        assert first is second
        loader.assert_called_once_with("SAG-1")
        assert cache.stats() == {"hits": 1, "misses": 1, "loads": 1, "evictions": 0, "size": 1}

    def test_stale_entry_reloaded(self):
        clock = FakeClock()
        cache = ChangelogCache(ttl=timedelta(minutes=120), clock=clock)
        loader = Mock(side_effect=lambda key: IssueChangelog.empty(key))

        cache.get_or_load("SAG-1", loader)
        clock.now += 120 * 60 + 1
        cache.get_or_load("SAG-1", loader)

        assert loader.call_count == 2

    def test_loader_error_not_cached(self):
        cache = ChangelogCache(clock=FakeClock())
        loader = Mock(side_effect=[TransportFailure("boom"), IssueChangelog.empty("SAG-1")])

        with pytest.raises(TransportFailure):
            cache.get_or_load("SAG-1", loader)
        assert cache.get_or_load("SAG-1", loader) == IssueChangelog.empty("SAG-1")
        assert cache.stats()["size"] == 1

    def test_evict_and_prewarm(self):
        cache = ChangelogCache(clock=FakeClock())
        cache.prewarm("SAG-1", IssueChangelog.empty("SAG-1"))

        assert cache.evict("SAG-1") is True
        assert cache.evict("SAG-1") is False
        assert cache.stats()["evictions"] == 1

    def test_single_load_under_concurrency(self):
        """Concurrent readers of one key trigger a single load."""
        cache = ChangelogCache()
        release = threading.Event()
        calls = []

        def loader(key):
            calls.append(key)
            release.wait(timeout=2)
            return IssueChangelog.empty(key)

        with ThreadPoolExecutor(max_workers=4) as pool:
            futures = [pool.submit(cache.get_or_load, "SAG-1", loader) for _ in range(4)]
            release.set()
            results = [f.result() for f in futures]

        assert calls == ["SAG-1"]
        assert all(r is results[0] for r in results)
        assert cache.pending_loads() == 0

    def test_key_locks_released(self):
        """Finished or failed loads leave no per-key lock behind."""
        cache = ChangelogCache(clock=FakeClock())
        loader = Mock(side_effect=[IssueChangelog.empty("SAG-1"), TransportFailure("boom")])

        cache.get_or_load("SAG-1", loader)
        with pytest.raises(TransportFailure):
            cache.get_or_load("SAG-2", loader)

        assert cache.pending_loads() == 0


class TestChangelogFetchCoordinator:
    """Test batch fetching and pre-sprint exclusion."""

    @pytest.fixture
    def changelogs(self, sprint_window):
        start = sprint_window.start
        return {
            "SAG-1": IssueChangelog("SAG-1", status_events=[
                StatusChange(start - timedelta(days=2), "r", "ON GOING", "DEV TERMINE"),
            ]),
            "SAG-2": IssueChangelog("SAG-2", status_events=[
                StatusChange(start - timedelta(days=2), "r", "A FAIRE", "ON GOING"),
            ]),
            "SAG-3": IssueChangelog("SAG-3", status_events=[
                StatusChange(start, "r", "ON GOING", "PAIR REVIEW"),
            ]),
        }

    @pytest.fixture
    def coordinator(self, changelogs):
        def load(key):
            if key == "SAG-4":
                raise TransportFailure("Jira API error: 503", 503)
            if key == "SAG-5":
                raise ChangelogError(key, "unreadable history entry")
            return changelogs[key]

        reconstructor = Mock()
        reconstructor.load.side_effect = load
        with ChangelogFetchCoordinator(reconstructor, ChangelogCache(), max_workers=2) as coordinator:
            yield coordinator

    def test_fetch_success(self, coordinator, changelogs):
        result = coordinator.fetch("SAG-1")

        assert result.ok
        assert result.changelog is changelogs["SAG-1"]

    def test_fetch_failure_is_a_result(self, coordinator):
        result = coordinator.fetch("SAG-4")

        assert not result.ok
        assert isinstance(result.error, TransportFailure)

    def test_fetch_many_isolates_failures(self, coordinator):
        """One failing issue does not affect the others."""
        results = coordinator.fetch_many(["SAG-1", "SAG-4", "SAG-2", "SAG-5", "SAG-1"])

        assert set(results) == {"SAG-1", "SAG-2", "SAG-4", "SAG-5"}
        assert results["SAG-1"].ok and results["SAG-2"].ok
        assert not results["SAG-4"].ok and not results["SAG-5"].ok

    def test_fetch_many_uses_cache(self, coordinator):
        coordinator.fetch_many(["SAG-1", "SAG-2"])
        coordinator.fetch_many(["SAG-1", "SAG-2"])

        assert coordinator.reconstructor.load.call_count == 2
        assert coordinator.cache.stats()["hits"] == 2

    def test_malformed_page_isolated(self, sprint_window):
        """A history page Jira returns in an unexpected shape fails one issue only."""
        gateway = JiraHistoryGateway("https://test.atlassian.net", "e", "t", session=Mock(), sleep=Mock())
        pages = {
            "SAG-1": Mock(status_code=200, json=lambda: ["not", "a", "page"], headers={}),
            "SAG-2": Mock(status_code=200, json=lambda: {"values": [], "total": 0}, headers={}),
        }
        gateway.session.request.side_effect = lambda method, url, **kw: pages[url.split("/")[-2]]
        reconstructor = ChangelogReconstructor(gateway, sprint_window.start.tzinfo)

        with ChangelogFetchCoordinator(reconstructor, ChangelogCache(), max_workers=2) as coordinator:
            results = coordinator.fetch_many(["SAG-1", "SAG-2"])

        assert isinstance(results["SAG-1"].error, ChangelogError)
        assert results["SAG-2"].ok

    def test_changelog_lookup(self, coordinator, changelogs):
        lookup = coordinator.changelog_lookup(["SAG-1", "SAG-4"])

        assert lookup("SAG-1") is changelogs["SAG-1"]
        assert lookup("SAG-4") is None
        assert lookup("SAG-2") is changelogs["SAG-2"]

    def test_filter_excluding_pre_sprint_done(self, coordinator, sprint_window):
        """Late-stage before the start is flagged; unknown status is kept."""
        tickets = [Ticket(f"SAG-{i}") for i in range(1, 6)]

        kept, flagged = coordinator.filter_excluding_pre_sprint_done(tickets, sprint_window.start)

        assert [t.key for t in flagged] == ["SAG-1"]
        assert flagged[0].done_before_sprint is True
        # SAG-3 reached PAIR REVIEW exactly at the start, which is not "before"
        assert {t.key for t in kept} == {"SAG-2", "SAG-3", "SAG-4", "SAG-5"}
        assert not any(t.done_before_sprint for t in kept)

    def test_filter_empty(self, coordinator, sprint_window):
        assert coordinator.filter_excluding_pre_sprint_done([], sprint_window.start) == ([], [])

    def test_shared_executor_not_closed(self):
        executor = ThreadPoolExecutor(max_workers=1)
        coordinator = ChangelogFetchCoordinator(Mock(), ChangelogCache(), executor=executor)
        coordinator.close()

        assert executor.submit(lambda: 42).result() == 42
        executor.shutdown()
