"""Creator handle discovery and status lifecycle."""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Union

from .config import HandlePolicyConfig
from .pagination import PaginationState, SourceCrawlResult
from .http_client import FetchOutcome
from .persistence import HandleRecord, HarvestStore, ScrapeHistoryEntry, StorePersistenceError

LOGGER = logging.getLogger(__name__)


class HandleStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    REMOVED = "removed"


class DiscoverySource(str, Enum):
    HASHTAG = "hashtag"
    MANUAL = "manual"
    MENTION = "video_mention"


@dataclass(frozen=True, slots=True)
class SourceNotFound:
    pass


@dataclass(frozen=True, slots=True)
class SourceForbidden:
    pass


@dataclass(frozen=True, slots=True)
class RepeatedPageFailures:
    failures: int


@dataclass(frozen=True, slots=True)
class CycleCompleted:
    no_posts_streak: int
    no_shop_streak: int
    total_videos: int
    shop_ratio: float


HandleEvent = Union[SourceNotFound, SourceForbidden, RepeatedPageFailures, CycleCompleted]


def removal_reason(event: CycleCompleted, policy: HandlePolicyConfig) -> str | None:
    """First matching removal rule for a completed cycle, or ``None`` to keep the handle."""

    if event.no_posts_streak >= policy.no_posts_threshold:
        return f"no recent posts for {event.no_posts_streak} cycles"
    if event.no_shop_streak >= policy.no_shop_threshold:
        return f"no shop videos for {event.no_shop_streak} cycles"
    if event.total_videos > policy.min_videos_for_ratio and event.shop_ratio < policy.min_shop_ratio:
        return f"shop ratio {event.shop_ratio:.1%} over {event.total_videos} videos"
    return None


def next_status(
    current: HandleStatus,
    event: HandleEvent,
    policy: HandlePolicyConfig | None = None,
) -> HandleStatus:
    """Pure transition function; ``inactive`` and ``removed`` are absorbing."""

    if current is not HandleStatus.ACTIVE:
        return current
    if isinstance(event, SourceNotFound):
        return HandleStatus.REMOVED
    if isinstance(event, (SourceForbidden, RepeatedPageFailures)):
        return HandleStatus.INACTIVE
    if isinstance(event, CycleCompleted):
        if removal_reason(event, policy or HandlePolicyConfig()) is not None:
            return HandleStatus.REMOVED
        return HandleStatus.ACTIVE
    raise TypeError(f"Unknown handle event {event!r}")


def failure_event(result: SourceCrawlResult) -> HandleEvent | None:
    """Map a crawl that ended on a permanent failure to its lifecycle event."""

    if result.state is PaginationState.SKIPPED:
        if result.outcome is FetchOutcome.NOT_FOUND:
            return SourceNotFound()
        if result.outcome is FetchOutcome.FORBIDDEN:
            return SourceForbidden()
    if result.state is PaginationState.FAILED:
        return RepeatedPageFailures(failures=result.consecutive_failures)
    return None


def _parse_status(value: str) -> HandleStatus:
    try:
        return HandleStatus(value)
    except ValueError:
        LOGGER.warning("Unknown handle status %r; treating as active", value)
        return HandleStatus.ACTIVE


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class HandleLifecycleManager:
    """Applies crawl outcomes to handle records and discovers new handles."""

    def __init__(
        self,
        store: HarvestStore,
        policy: HandlePolicyConfig | None = None,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._policy = policy or HandlePolicyConfig()
        self._clock = clock or _utcnow

    def discover_handles(self, source: DiscoverySource = DiscoverySource.HASHTAG) -> int:
        """Track every video author not yet known as a handle."""

        authors = self._store.video_authors()
        tracked = self._store.tracked_usernames()
        new_usernames = sorted(authors - tracked)
        if not new_usernames:
            LOGGER.info("No new handles discovered")
            return 0

        batch_size = max(1, self._policy.discovery_batch_size)
        inserted = 0
        for start in range(0, len(new_usernames), batch_size):
            batch = new_usernames[start : start + batch_size]
            try:
                inserted += self._store.insert_handles(batch, source.value)
            except StorePersistenceError as exc:
                LOGGER.error("Failed to insert handle batch starting at %d: %s", start, exc)
        LOGGER.info("Discovered %d new handles (%d candidates)", inserted, len(new_usernames))
        return inserted

    def apply_outcome(self, handle: HandleRecord, result: SourceCrawlResult) -> HandleRecord:
        current = _parse_status(handle.status)
        event = failure_event(result)

        if event is not None:
            status = next_status(current, event, self._policy)
            if status is not current:
                LOGGER.warning(
                    "Handle @%s -> %s (%s)", handle.username, status.value, result.error or type(event).__name__
                )
                try:
                    self._store.update_handle_status(handle.username, status.value)
                except StorePersistenceError as exc:
                    LOGGER.error("Failed to update status for @%s: %s", handle.username, exc)
            self._record_history(handle.username, result, success=False)
            return replace(handle, status=status.value)

        if result.interrupted:
            self._record_history(handle.username, result, success=False, error="interrupted")
            return handle

        total = handle.total_videos_found + result.videos_found
        shop = handle.shop_videos_found + result.shop_videos_found
        ratio = shop / total if total else 0.0
        no_posts = 0 if result.has_recent_posts else handle.consecutive_days_no_posts + 1
        no_shop = 0 if result.shop_videos_found > 0 else handle.consecutive_days_no_shop + 1

        cycle = CycleCompleted(
            no_posts_streak=no_posts,
            no_shop_streak=no_shop,
            total_videos=total,
            shop_ratio=ratio,
        )
        status = next_status(current, cycle, self._policy)
        if status is HandleStatus.REMOVED and current is not HandleStatus.REMOVED:
            LOGGER.info("Removing handle @%s: %s", handle.username, removal_reason(cycle, self._policy))

        updated = HandleRecord(
            username=handle.username,
            status=status.value,
            total_videos_found=total,
            shop_videos_found=shop,
            shop_ratio=ratio,
            consecutive_days_no_shop=no_shop,
            consecutive_days_no_posts=no_posts,
            last_scraped_at=self._clock(),
        )
        try:
            self._store.update_handle_stats(updated)
        except StorePersistenceError as exc:
            LOGGER.error("Failed to update stats for @%s: %s", handle.username, exc)
        self._record_history(handle.username, result, success=True)
        return updated

    def _record_history(
        self,
        username: str,
        result: SourceCrawlResult,
        *,
        success: bool,
        error: str | None = None,
    ) -> None:
        entry = ScrapeHistoryEntry(
            username=username,
            videos_found=result.videos_found,
            shop_videos_found=result.shop_videos_found,
            pages_scraped=result.pages_fetched,
            success=success,
            error_message=error or (None if success else result.error),
        )
        try:
            self._store.record_scrape_history(entry)
        except StorePersistenceError as exc:
            LOGGER.error("Failed to record scrape history for @%s: %s", username, exc)


__all__ = [
    "CycleCompleted",
    "DiscoverySource",
    "HandleEvent",
    "HandleLifecycleManager",
    "HandleStatus",
    "RepeatedPageFailures",
    "SourceForbidden",
    "SourceNotFound",
    "failure_event",
    "next_status",
    "removal_reason",
]
