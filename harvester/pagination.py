"""Drive one hashtag or creator handle through successive listing pages."""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable

from .api import ContentApiClient
from .config import HarvestConfig
from .extractor import ExtractedVideo, extract_videos, page_entries
from .http_client import FetchOutcome, FetchResult
from .persistence import HarvestStore, StorePersistenceError, run_in_store_thread

LOGGER = logging.getLogger(__name__)

_FETCH_FAILURE_LOG = "fetch_failures.ndjson"


class SourceKind(str, Enum):
    HASHTAG = "hashtag"
    HANDLE = "handle"


class PaginationState(str, Enum):
    PAGING = "paging"
    DONE = "done"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class CrawlSource:
    kind: SourceKind
    identifier: str

    def describe(self) -> str:
        prefix = "#" if self.kind is SourceKind.HASHTAG else "@"
        return f"{prefix}{self.identifier}"


@dataclass(slots=True)
class SourceCrawlResult:
    source: CrawlSource
    state: PaginationState = PaginationState.PAGING
    pages_fetched: int = 0
    pages_skipped: int = 0
    videos_found: int = 0
    shop_videos_found: int = 0
    rows_upserted: int = 0
    has_recent_posts: bool = False
    consecutive_failures: int = 0
    interrupted: bool = False
    outcome: FetchOutcome | None = None
    error: str | None = None
    raw_pages: list[Any] = field(default_factory=list, repr=False)


def _has_more(payload: dict) -> bool:
    value = payload.get("has_more")
    if isinstance(value, bool):
        return value
    return isinstance(value, int) and value > 0


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PaginationOrchestrator:
    """Pages a source sequentially, extracting and upserting shop-tagged videos.

    A page that exhausts its retry budget is logged and skipped with the offset
    still advancing; the source only fails after ``max_consecutive_failures``
    such pages in a row. A 404 or 403 ends the source immediately.
    """

    def __init__(
        self,
        api: ContentApiClient,
        store: HarvestStore,
        config: HarvestConfig,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._api = api
        self._store = store
        self._config = config
        self._clock = clock or _utcnow

    def _max_pages(self, source: CrawlSource) -> int:
        if source.kind is SourceKind.HASHTAG:
            return self._config.pagination.hashtag_max_pages
        return self._config.pagination.handle_max_pages

    async def _fetch_page(self, source: CrawlSource, offset: int) -> FetchResult:
        if source.kind is SourceKind.HASHTAG:
            return await self._api.hashtag_posts(source.identifier, offset)
        return await self._api.user_posts(source.identifier, offset)

    async def crawl(
        self,
        source: CrawlSource,
        stop_event: asyncio.Event | None = None,
    ) -> SourceCrawlResult:
        result = SourceCrawlResult(source=source)
        page_size = self._config.pagination.page_size
        max_failures = self._config.pagination.max_consecutive_failures
        max_pages = self._max_pages(source)
        recent_cutoff = self._clock() - timedelta(seconds=self._config.handles.recent_post_window)
        keep_raw = self._config.raw_payload_cache_enabled and source.kind is SourceKind.HASHTAG

        offset = 0
        page_number = 0
        LOGGER.info("Crawling %s", source.describe())

        while result.state is PaginationState.PAGING:
            if page_number >= max_pages:
                LOGGER.info("Reached page cap (%d) for %s", max_pages, source.describe())
                result.state = PaginationState.DONE
                break
            if stop_event is not None and stop_event.is_set():
                LOGGER.info("Stop requested; ending %s after %d pages", source.describe(), result.pages_fetched)
                result.interrupted = True
                result.state = PaginationState.DONE
                break

            page_number += 1
            fetched = await self._fetch_page(source, offset)

            if fetched.outcome in (FetchOutcome.NOT_FOUND, FetchOutcome.FORBIDDEN):
                LOGGER.warning("Skipping %s: %s", source.describe(), fetched.error)
                result.state = PaginationState.SKIPPED
                result.outcome = fetched.outcome
                result.error = fetched.error
                break

            payload = fetched.payload
            if fetched.outcome is FetchOutcome.EXHAUSTED or not isinstance(payload, dict):
                error = fetched.error or "Malformed page payload"
                result.pages_skipped += 1
                result.consecutive_failures += 1
                reason = fetched.outcome.value if fetched.outcome is FetchOutcome.EXHAUSTED else "malformed"
                self._record_fetch_failure(source, offset, reason, error)
                if result.consecutive_failures >= max_failures:
                    LOGGER.error(
                        "Giving up on %s after %d consecutive failed pages",
                        source.describe(),
                        result.consecutive_failures,
                    )
                    result.state = PaginationState.FAILED
                    result.outcome = FetchOutcome.EXHAUSTED
                    result.error = error
                    break
                LOGGER.warning("Skipping page at offset %d for %s: %s", offset, source.describe(), error)
                offset += page_size
                continue

            result.consecutive_failures = 0
            result.pages_fetched += 1
            result.outcome = FetchOutcome.OK
            if keep_raw:
                result.raw_pages.append(payload)

            if not page_entries(payload):
                LOGGER.info("No entries at offset %d for %s; done", offset, source.describe())
                result.state = PaginationState.DONE
                break

            await self._ingest_page(source, payload, result, recent_cutoff)

            if not _has_more(payload):
                result.state = PaginationState.DONE
                break
            offset += page_size

        if keep_raw and result.raw_pages:
            self._persist_raw_pages(source, result.raw_pages)

        LOGGER.info(
            "Finished %s: state=%s pages=%d skipped=%d videos=%d shop=%d upserted=%d",
            source.describe(),
            result.state.value,
            result.pages_fetched,
            result.pages_skipped,
            result.videos_found,
            result.shop_videos_found,
            result.rows_upserted,
        )
        return result

    async def _ingest_page(
        self,
        source: CrawlSource,
        payload: dict,
        result: SourceCrawlResult,
        recent_cutoff: datetime,
    ) -> None:
        videos = extract_videos([payload])
        result.videos_found += len(videos)
        if any(video.created_at is not None and video.created_at >= recent_cutoff for video in videos):
            result.has_recent_posts = True

        shop_videos = [video for video in videos if video.has_shop]
        result.shop_videos_found += len(shop_videos)
        if shop_videos:
            await run_in_store_thread(self._store_shop_videos, source, shop_videos, result)

    def _store_shop_videos(
        self,
        source: CrawlSource,
        shop_videos: list[ExtractedVideo],
        result: SourceCrawlResult,
    ) -> None:
        try:
            blacklisted = self._store.blacklisted_among(video.product_id for video in shop_videos)
            rows = [video.to_row() for video in shop_videos if not _is_blacklisted(video, blacklisted)]
            if blacklisted:
                LOGGER.info(
                    "Dropped %d videos with blacklisted products from %s",
                    len(shop_videos) - len(rows),
                    source.describe(),
                )
            result.rows_upserted += self._store.upsert_videos(rows)
        except StorePersistenceError as exc:
            LOGGER.error("Failed to store page for %s: %s", source.describe(), exc)

    def _record_fetch_failure(
        self,
        source: CrawlSource,
        offset: int,
        outcome: str,
        error: str,
    ) -> None:
        payload = {
            "source_kind": source.kind.value,
            "source_id": source.identifier,
            "offset": offset,
            "outcome": outcome,
            "error": error,
            "timestamp": _utcnow().isoformat(),
        }
        log_path = self._config.log_dir / _FETCH_FAILURE_LOG
        try:
            log_path.parent.mkdir(parents=True, exist_ok=True)
            with log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(payload, ensure_ascii=False) + "\n")
        except OSError as file_error:  # pragma: no cover - filesystem failure path
            LOGGER.warning("Failed to record fetch failure for %s: %s", source.describe(), file_error)

    def _persist_raw_pages(self, source: CrawlSource, pages: list[Any]) -> None:
        raw_path = self._config.raw_payload_path(source.kind.value, source.identifier)
        try:
            raw_path.parent.mkdir(parents=True, exist_ok=True)
            raw_path.write_text(json.dumps(pages, ensure_ascii=False, indent=2), encoding="utf-8")
        except OSError as exc:  # pragma: no cover - filesystem failure path
            LOGGER.warning("Failed to save raw pages for %s: %s", source.describe(), exc)


def _is_blacklisted(video: ExtractedVideo, blacklisted: set[str]) -> bool:
    return video.product_id is not None and video.product_id in blacklisted


__all__ = [
    "CrawlSource",
    "PaginationOrchestrator",
    "PaginationState",
    "SourceCrawlResult",
    "SourceKind",
]
