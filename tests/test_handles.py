import unittest
from datetime import datetime, timezone
from unittest.mock import MagicMock

from factories import make_entry, sqlite_session_factory

from harvester.config import HandlePolicyConfig
from harvester.extractor import extract_video
from harvester.handles import (
    CycleCompleted,
    DiscoverySource,
    HandleLifecycleManager,
    HandleStatus,
    RepeatedPageFailures,
    SourceForbidden,
    SourceNotFound,
    next_status,
)
from harvester.http_client import FetchOutcome
from harvester.pagination import CrawlSource, PaginationState, SourceCrawlResult, SourceKind
from harvester.persistence import HandleRecord, HarvestStore, StorePersistenceError
from models import HandleScrapeHistory

FIXED_NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def _result(username: str = "alice", **kwargs) -> SourceCrawlResult:
    kwargs.setdefault("state", PaginationState.DONE)
    return SourceCrawlResult(source=CrawlSource(SourceKind.HANDLE, username), **kwargs)


class NextStatusTestCase(unittest.TestCase):
    def test_permanent_failures(self) -> None:
        self.assertIs(next_status(HandleStatus.ACTIVE, SourceNotFound()), HandleStatus.REMOVED)
        self.assertIs(next_status(HandleStatus.ACTIVE, SourceForbidden()), HandleStatus.INACTIVE)
        self.assertIs(next_status(HandleStatus.ACTIVE, RepeatedPageFailures(5)), HandleStatus.INACTIVE)

    def test_terminal_states_are_absorbing(self) -> None:
        healthy = CycleCompleted(no_posts_streak=0, no_shop_streak=0, total_videos=10, shop_ratio=1.0)
        for status in (HandleStatus.INACTIVE, HandleStatus.REMOVED):
            self.assertIs(next_status(status, healthy), status)
            self.assertIs(next_status(status, SourceNotFound()), status)

    def test_streak_thresholds(self) -> None:
        policy = HandlePolicyConfig()
        six = CycleCompleted(no_posts_streak=6, no_shop_streak=13, total_videos=10, shop_ratio=0.5)
        seven_posts = CycleCompleted(no_posts_streak=7, no_shop_streak=0, total_videos=10, shop_ratio=0.5)
        fourteen_shop = CycleCompleted(no_posts_streak=0, no_shop_streak=14, total_videos=10, shop_ratio=0.5)

        self.assertIs(next_status(HandleStatus.ACTIVE, six, policy), HandleStatus.ACTIVE)
        self.assertIs(next_status(HandleStatus.ACTIVE, seven_posts, policy), HandleStatus.REMOVED)
        self.assertIs(next_status(HandleStatus.ACTIVE, fourteen_shop, policy), HandleStatus.REMOVED)

    def test_low_ratio_only_counts_past_minimum_volume(self) -> None:
        at_limit = CycleCompleted(no_posts_streak=0, no_shop_streak=0, total_videos=50, shop_ratio=0.02)
        past_limit = CycleCompleted(no_posts_streak=0, no_shop_streak=0, total_videos=51, shop_ratio=0.09)

        self.assertIs(next_status(HandleStatus.ACTIVE, at_limit), HandleStatus.ACTIVE)
        self.assertIs(next_status(HandleStatus.ACTIVE, past_limit), HandleStatus.REMOVED)


class LifecycleManagerTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.session_factory = sqlite_session_factory()
        self.store = HarvestStore(self.session_factory)
        self.manager = HandleLifecycleManager(self.store, HandlePolicyConfig(), clock=lambda: FIXED_NOW)
        self.store.insert_handles(["alice"], DiscoverySource.MANUAL.value)

    def _history(self) -> list[HandleScrapeHistory]:
        with self.session_factory() as session:
            return session.query(HandleScrapeHistory).all()

    def test_seven_quiet_cycles_remove_handle(self) -> None:
        quiet = _result(videos_found=3, shop_videos_found=1, has_recent_posts=False, pages_fetched=1)

        for _ in range(6):
            self.manager.apply_outcome(self.store.get_handle("alice"), quiet)
        self.assertEqual(self.store.get_handle("alice").status, "active")
        self.assertEqual(self.store.get_handle("alice").consecutive_days_no_posts, 6)

        self.manager.apply_outcome(self.store.get_handle("alice"), quiet)

        handle = self.store.get_handle("alice")
        self.assertEqual(handle.status, "removed")
        self.assertEqual(handle.consecutive_days_no_posts, 7)
        self.assertEqual(len(self._history()), 7)

    def test_recent_post_resets_streak_and_updates_stats(self) -> None:
        self.manager.apply_outcome(
            self.store.get_handle("alice"), _result(videos_found=4, shop_videos_found=0, has_recent_posts=False)
        )
        updated = self.manager.apply_outcome(
            self.store.get_handle("alice"), _result(videos_found=6, shop_videos_found=3, has_recent_posts=True)
        )

        self.assertEqual(updated.consecutive_days_no_posts, 0)
        self.assertEqual(updated.consecutive_days_no_shop, 0)
        self.assertEqual(updated.total_videos_found, 10)
        self.assertEqual(updated.shop_videos_found, 3)
        self.assertAlmostEqual(updated.shop_ratio, 0.3)
        self.assertEqual(updated.last_scraped_at, FIXED_NOW)
        self.assertEqual(self.store.get_handle("alice").total_videos_found, 10)

    def test_not_found_removes_without_touching_stats(self) -> None:
        result = _result(state=PaginationState.SKIPPED, outcome=FetchOutcome.NOT_FOUND, error="Not found (404)")

        updated = self.manager.apply_outcome(self.store.get_handle("alice"), result)

        handle = self.store.get_handle("alice")
        self.assertEqual(updated.status, "removed")
        self.assertEqual(handle.status, "removed")
        self.assertIsNone(handle.last_scraped_at)
        history = self._history()
        self.assertEqual(len(history), 1)
        self.assertFalse(history[0].success)
        self.assertEqual(history[0].error_message, "Not found (404)")

    def test_forbidden_and_repeated_failures_suspend(self) -> None:
        self.store.insert_handles(["bob"], DiscoverySource.HASHTAG.value)
        forbidden = _result(state=PaginationState.SKIPPED, outcome=FetchOutcome.FORBIDDEN)
        failing = _result("bob", state=PaginationState.FAILED, outcome=FetchOutcome.EXHAUSTED, consecutive_failures=5)

        self.manager.apply_outcome(self.store.get_handle("alice"), forbidden)
        self.manager.apply_outcome(self.store.get_handle("bob"), failing)

        self.assertEqual(self.store.get_handle("alice").status, "inactive")
        self.assertEqual(self.store.get_handle("bob").status, "inactive")
        self.assertEqual(self.store.active_handles(), [])

    def test_interrupted_crawl_only_records_history(self) -> None:
        self.manager.apply_outcome(self.store.get_handle("alice"), _result(interrupted=True, videos_found=2))

        handle = self.store.get_handle("alice")
        self.assertEqual(handle.total_videos_found, 0)
        self.assertEqual(self._history()[0].error_message, "interrupted")

    def test_history_failure_is_logged_not_raised(self) -> None:
        store = MagicMock()
        store.record_scrape_history.side_effect = StorePersistenceError("db down")
        manager = HandleLifecycleManager(store, clock=lambda: FIXED_NOW)

        with self.assertLogs("harvester.handles", level="ERROR"):
            updated = manager.apply_outcome(HandleRecord("alice"), _result(videos_found=1, has_recent_posts=True))

        self.assertEqual(updated.status, "active")
        store.update_handle_stats.assert_called_once()

    def test_status_write_failure_still_records_history(self) -> None:
        store = MagicMock()
        store.update_handle_status.side_effect = StorePersistenceError("db down")
        manager = HandleLifecycleManager(store, clock=lambda: FIXED_NOW)
        result = _result(state=PaginationState.SKIPPED, outcome=FetchOutcome.NOT_FOUND, error="Not found (404)")

        with self.assertLogs("harvester.handles", level="ERROR"):
            updated = manager.apply_outcome(HandleRecord("alice"), result)

        self.assertEqual(updated.status, "removed")
        store.record_scrape_history.assert_called_once()
        entry = store.record_scrape_history.call_args.args[0]
        self.assertFalse(entry.success)

    def test_stats_write_failure_is_logged_not_raised(self) -> None:
        store = MagicMock()
        store.update_handle_stats.side_effect = StorePersistenceError("db down")
        manager = HandleLifecycleManager(store, clock=lambda: FIXED_NOW)

        with self.assertLogs("harvester.handles", level="ERROR"):
            updated = manager.apply_outcome(HandleRecord("alice"), _result(videos_found=2, has_recent_posts=True))

        self.assertEqual(updated.total_videos_found, 2)
        store.record_scrape_history.assert_called_once()


class DiscoveryTestCase(unittest.TestCase):
    def test_discovers_untracked_authors_in_batches(self) -> None:
        store = HarvestStore(sqlite_session_factory())
        rows = [extract_video(make_entry(str(index), username=f"user{index}")).to_row() for index in range(5)]
        store.upsert_videos(rows)
        store.insert_handles(["user0"], DiscoverySource.MANUAL.value)

        manager = HandleLifecycleManager(store, HandlePolicyConfig(discovery_batch_size=2))
        inserted = manager.discover_handles()

        self.assertEqual(inserted, 4)
        self.assertEqual(store.tracked_usernames(), {f"user{index}" for index in range(5)})
        self.assertEqual(manager.discover_handles(), 0)

    def test_failed_batch_does_not_stop_the_rest(self) -> None:
        store = MagicMock()
        store.video_authors.return_value = {"a", "b", "c"}
        store.tracked_usernames.return_value = set()
        store.insert_handles.side_effect = [StorePersistenceError("boom"), 1]

        manager = HandleLifecycleManager(store, HandlePolicyConfig(discovery_batch_size=2))
        with self.assertLogs("harvester.handles", level="ERROR"):
            inserted = manager.discover_handles()

        self.assertEqual(inserted, 1)
        self.assertEqual(store.insert_handles.call_count, 2)
        store.insert_handles.assert_called_with(["c"], "hashtag")


if __name__ == "__main__":
    unittest.main()
