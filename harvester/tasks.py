"""Celery tasks for on-demand product enrichment."""

from __future__ import annotations

import asyncio
import logging
from functools import lru_cache
from typing import Sequence

from celery import Task
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from models import Base

from .celery_app import celery_app
from .config import HarvestConfig, load_config_from_env
from .runner import build_runtime

LOGGER = logging.getLogger(__name__)

_ENGINE_OPTIONS = {
    "pool_pre_ping": True,
    "pool_recycle": 1800,
}


@lru_cache(maxsize=8)
def _session_factory(db_url: str):
    engine = create_engine(db_url, **_ENGINE_OPTIONS)
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine)


async def _enrich_products(config: HarvestConfig, session_factory, product_ids: list[str]) -> dict[str, int]:
    async with build_runtime(config, session_factory) as runtime:
        summary = await runtime.pipeline.enrich_many(product_ids, config.rate_limit.max_workers)
    return dict(summary)


@celery_app.task(name="harvester.enrich_products", bind=True)
def enrich_products_task(self: Task, product_ids: Sequence[str]) -> dict[str, object]:
    ids = [str(product_id) for product_id in product_ids or [] if product_id]
    if not ids:
        LOGGER.info("No product ids supplied; nothing to enrich")
        return {"status": "skipped", "reason": "no_products"}

    config = load_config_from_env()
    if not config.db_url:
        raise ValueError("HARVESTER_DATABASE_URL (or DATABASE_URL) is required")

    session_factory = _session_factory(config.db_url)
    summary = asyncio.run(_enrich_products(config, session_factory, ids))
    LOGGER.info("Enrichment task processed %d products: %s", len(ids), summary)
    return {"status": "ok", "products": len(ids), "outcomes": summary}


__all__ = ["enrich_products_task"]
