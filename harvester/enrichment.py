"""Product enrichment: cache-aside lookup with delete-and-blacklist on failure."""

from __future__ import annotations

import asyncio
import logging
from collections import Counter
from enum import Enum
from typing import Any, Iterable

from .api import ContentApiClient
from .http_client import FetchOutcome
from .persistence import HarvestStore, ProductMetadata, StorePersistenceError, run_in_store_thread
from .pool import run_bounded

LOGGER = logging.getLogger(__name__)


class EnrichmentOutcome(str, Enum):
    CACHED = "cached"
    ENRICHED = "enriched"
    BLACKLISTED = "blacklisted"
    ALREADY_BLACKLISTED = "already_blacklisted"
    FAILED = "failed"


def _text(value: Any) -> str:
    if value is None:
        return ""
    return str(value)


def parse_product_detail(payload: Any) -> ProductMetadata | None:
    """Display fields from ``data.products[0]``, or ``None`` when the array is missing or empty."""

    if not isinstance(payload, dict):
        return None
    data = payload.get("data")
    if not isinstance(data, dict):
        return None
    products = data.get("products")
    if not isinstance(products, list) or not products:
        return None
    first = products[0]
    if not isinstance(first, dict):
        return None

    base = first.get("product_base")
    base = base if isinstance(base, dict) else {}
    seller = first.get("seller")
    seller = seller if isinstance(seller, dict) else {}

    image = ""
    images = base.get("images")
    if isinstance(images, list) and images and isinstance(images[0], dict):
        url_list = images[0].get("url_list")
        if isinstance(url_list, list) and url_list:
            image = _text(url_list[0])

    price_info = base.get("price")
    price_info = price_info if isinstance(price_info, dict) else {}
    original_price = price_info.get("original_price")
    if isinstance(original_price, str) and original_price.strip():
        price = original_price
    else:
        price = _text(price_info.get("real_price"))

    return ProductMetadata(
        product_name=_text(base.get("title")),
        product_image=image,
        price=price,
        shop_name=_text(seller.get("name")),
    )


class EnrichmentPipeline:
    """Resolves product display fields and propagates them to referencing videos."""

    def __init__(self, store: HarvestStore, api: ContentApiClient) -> None:
        self._store = store
        self._api = api

    async def enrich(self, product_id: str) -> EnrichmentOutcome:
        try:
            return await self._enrich(product_id)
        except StorePersistenceError as exc:
            LOGGER.error("Store failure while enriching product %s: %s", product_id, exc)
            return EnrichmentOutcome.FAILED

    async def _enrich(self, product_id: str) -> EnrichmentOutcome:
        resolved = await run_in_store_thread(self._resolve_locally, product_id)
        if resolved is not None:
            return resolved

        fetched = await self._api.product_detail(product_id)
        metadata = parse_product_detail(fetched.payload) if fetched.outcome is FetchOutcome.OK else None
        if metadata is None:
            if fetched.outcome is FetchOutcome.OK:
                reason = "missing products array"
            else:
                reason = fetched.error or fetched.outcome.value
            await run_in_store_thread(self._discard, product_id, reason)
            return EnrichmentOutcome.BLACKLISTED

        await run_in_store_thread(self._save_metadata, product_id, metadata)
        return EnrichmentOutcome.ENRICHED

    def _resolve_locally(self, product_id: str) -> EnrichmentOutcome | None:
        cached = self._store.get_cached_product(product_id)
        if cached is not None:
            updated = self._store.apply_product_metadata(product_id, cached)
            LOGGER.info("Cache hit for product %s; updated %d videos", product_id, updated)
            return EnrichmentOutcome.CACHED

        if product_id in self._store.blacklisted_among([product_id]):
            removed = self._store.delete_videos_for_product(product_id)
            LOGGER.info("Product %s already blacklisted; removed %d videos", product_id, removed)
            return EnrichmentOutcome.ALREADY_BLACKLISTED
        return None

    def _save_metadata(self, product_id: str, metadata: ProductMetadata) -> None:
        self._store.cache_product(product_id, metadata)
        updated = self._store.apply_product_metadata(product_id, metadata)
        LOGGER.info("Enriched product %s (%s); updated %d videos", product_id, metadata.product_name, updated)

    def _discard(self, product_id: str, reason: str) -> None:
        # Delete before blacklisting; a crash in between leaves the product retryable.
        removed = self._store.delete_videos_for_product(product_id)
        self._store.blacklist_product(product_id, reason)
        LOGGER.warning("Blacklisted product %s (%s); removed %d videos", product_id, reason, removed)

    async def enrich_many(self, product_ids: Iterable[str], max_workers: int) -> Counter:
        """Enrich distinct ids concurrently; all upstream calls share one fetch queue."""

        unique_ids = list(dict.fromkeys(product_id for product_id in product_ids if product_id))
        results = await run_bounded(unique_ids, self.enrich, max_workers)
        summary: Counter = Counter()
        for outcome in results:
            if isinstance(outcome, EnrichmentOutcome):
                summary[outcome.value] += 1
            elif not isinstance(outcome, asyncio.CancelledError):
                summary[EnrichmentOutcome.FAILED.value] += 1
        LOGGER.info("Enrichment batch finished: %s", dict(summary))
        return summary


__all__ = ["EnrichmentOutcome", "EnrichmentPipeline", "parse_product_detail"]
