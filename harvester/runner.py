"""Long-running discovery and enrichment cycles."""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
from collections import Counter
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Sequence

import httpx
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from models import Base

from .api import ContentApiClient, build_async_client
from .config import HarvestConfig, load_config_from_env
from .enrichment import EnrichmentOutcome, EnrichmentPipeline
from .handles import HandleLifecycleManager
from .http_client import RateLimitedFetchQueue
from .pagination import CrawlSource, PaginationOrchestrator, SourceKind
from .persistence import HandleRecord, HarvestStore, StorePersistenceError, run_in_store_thread
from .pool import run_bounded

LOGGER = logging.getLogger(__name__)

CYCLES = ("discover", "enrich")


def configure_logging() -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")
    logging.getLogger("httpx").setLevel(logging.WARNING)


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Harvest shop videos and enrich their products. Settings come from the environment."
    )
    parser.add_argument("cycle", choices=CYCLES, help="Which long-running cycle to run")
    return parser


@dataclass(slots=True)
class HarvestRuntime:
    config: HarvestConfig
    store: HarvestStore
    queue: RateLimitedFetchQueue
    api: ContentApiClient
    orchestrator: PaginationOrchestrator
    lifecycle: HandleLifecycleManager
    pipeline: EnrichmentPipeline


@dataclass(slots=True)
class DiscoverySummary:
    hashtags_crawled: int = 0
    new_handles: int = 0
    handles_crawled: int = 0
    videos_upserted: int = 0


@asynccontextmanager
async def build_runtime(
    config: HarvestConfig,
    session_factory,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> AsyncIterator[HarvestRuntime]:
    """Wire one fetch queue, store and the engine components for a process."""

    store = HarvestStore(session_factory)
    async with build_async_client(config, transport=transport) as client:
        async with RateLimitedFetchQueue(
            client, requests_per_second=config.rate_limit.requests_per_second
        ) as queue:
            api = ContentApiClient(
                queue,
                config.api,
                config.pagination,
                page_retry=config.page_retry,
                product_retry=config.product_retry,
            )
            yield HarvestRuntime(
                config=config,
                store=store,
                queue=queue,
                api=api,
                orchestrator=PaginationOrchestrator(api, store, config),
                lifecycle=HandleLifecycleManager(store, config.handles),
                pipeline=EnrichmentPipeline(store, api),
            )


async def run_discovery_cycle(
    runtime: HarvestRuntime,
    stop_event: asyncio.Event | None = None,
) -> DiscoverySummary:
    summary = DiscoverySummary()

    for tag in await run_in_store_thread(runtime.store.list_hashtags):
        if stop_event is not None and stop_event.is_set():
            return summary
        result = await runtime.orchestrator.crawl(CrawlSource(SourceKind.HASHTAG, tag), stop_event)
        summary.hashtags_crawled += 1
        summary.videos_upserted += result.rows_upserted

    try:
        summary.new_handles = await run_in_store_thread(runtime.lifecycle.discover_handles)
    except StorePersistenceError as exc:
        LOGGER.error("Handle discovery failed: %s", exc)

    if stop_event is not None and stop_event.is_set():
        return summary

    handles = await run_in_store_thread(runtime.store.active_handles)
    LOGGER.info("Crawling %d active handles", len(handles))

    async def _crawl_handle(handle: HandleRecord) -> None:
        if stop_event is not None and stop_event.is_set():
            return
        result = await runtime.orchestrator.crawl(CrawlSource(SourceKind.HANDLE, handle.username), stop_event)
        await run_in_store_thread(runtime.lifecycle.apply_outcome, handle, result)
        summary.handles_crawled += 1
        summary.videos_upserted += result.rows_upserted

    await run_bounded(handles, _crawl_handle, runtime.config.rate_limit.max_workers)
    LOGGER.info(
        "Discovery cycle finished: %d hashtags, %d new handles, %d handles, %d videos upserted",
        summary.hashtags_crawled,
        summary.new_handles,
        summary.handles_crawled,
        summary.videos_upserted,
    )
    return summary


async def run_enrichment_cycle(runtime: HarvestRuntime) -> Counter:
    """Enrich one batch of products that still lack display fields."""

    product_ids = await run_in_store_thread(
        runtime.store.products_missing_metadata, runtime.config.schedule.enrichment_batch_size
    )
    if not product_ids:
        return Counter()
    LOGGER.info("Enriching %d products", len(product_ids))
    return await runtime.pipeline.enrich_many(product_ids, runtime.config.rate_limit.max_workers)


async def _sleep_or_stop(stop_event: asyncio.Event, seconds: float) -> None:
    try:
        await asyncio.wait_for(stop_event.wait(), timeout=seconds)
    except asyncio.TimeoutError:
        pass


async def discovery_loop(runtime: HarvestRuntime, stop_event: asyncio.Event) -> None:
    schedule = runtime.config.schedule
    while not stop_event.is_set():
        try:
            await run_discovery_cycle(runtime, stop_event)
        except Exception:
            LOGGER.exception("Discovery cycle failed; retrying in %.0fs", schedule.cycle_error_sleep)
            await _sleep_or_stop(stop_event, schedule.cycle_error_sleep)
            continue
        LOGGER.info("Next discovery cycle in %.0fs", schedule.discovery_interval)
        await _sleep_or_stop(stop_event, schedule.discovery_interval)


async def enrichment_loop(runtime: HarvestRuntime, stop_event: asyncio.Event) -> None:
    schedule = runtime.config.schedule
    while not stop_event.is_set():
        try:
            summary = await run_enrichment_cycle(runtime)
        except Exception:
            LOGGER.exception("Enrichment cycle failed; retrying in %.0fs", schedule.enrichment_error_sleep)
            await _sleep_or_stop(stop_event, schedule.enrichment_error_sleep)
            continue
        if not summary:
            LOGGER.info("No products to enrich; sleeping %.0fs", schedule.enrichment_idle_sleep)
            await _sleep_or_stop(stop_event, schedule.enrichment_idle_sleep)
        elif set(summary) == {EnrichmentOutcome.FAILED.value}:
            await _sleep_or_stop(stop_event, schedule.enrichment_error_sleep)


def install_signal_handlers(stop_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:  # pragma: no cover - platforms without signal support
            LOGGER.debug("Signal handlers unavailable for %s", sig)


async def run_forever(cycle: str, config: HarvestConfig, session_factory) -> None:
    stop_event = asyncio.Event()
    install_signal_handlers(stop_event)
    async with build_runtime(config, session_factory) as runtime:
        if cycle == "discover":
            await discovery_loop(runtime, stop_event)
        else:
            await enrichment_loop(runtime, stop_event)
    LOGGER.info("%s cycle stopped", cycle.capitalize())


def main(argv: Sequence[str] | None = None) -> int:
    configure_logging()
    parser = build_arg_parser()
    args = parser.parse_args(argv)

    try:
        config = load_config_from_env()
    except ValueError as exc:
        parser.error(str(exc))

    if not config.db_url:
        parser.error("HARVESTER_DATABASE_URL (or DATABASE_URL) is required")
    if not config.api.api_key:
        parser.error("RAPIDAPI_KEY (or TOKAPI_KEY) is required")

    config.ensure_directories()
    engine = create_engine(config.db_url, pool_pre_ping=True)
    Base.metadata.create_all(engine)  # ensure required tables exist before queries
    SessionLocal = sessionmaker(bind=engine)

    asyncio.run(run_forever(args.cycle, config, SessionLocal))
    return 0


__all__ = [
    "DiscoverySummary",
    "HarvestRuntime",
    "build_arg_parser",
    "build_runtime",
    "configure_logging",
    "discovery_loop",
    "enrichment_loop",
    "main",
    "run_discovery_cycle",
    "run_enrichment_cycle",
    "run_forever",
]

if __name__ == "__main__":  # pragma: no cover - CLI entry point
    raise SystemExit(main())

