"""Bounded concurrency helper shared by the discovery and enrichment cycles."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Iterable, TypeVar

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


async def run_bounded(
    items: Iterable[T],
    worker: Callable[[T], Awaitable[Any]],
    max_workers: int,
) -> list[Any]:
    """Run ``worker`` over ``items`` with at most ``max_workers`` in flight.

    Results are returned in input order. A worker that raises does not cancel
    the others; its exception is logged and takes the place of its result.
    """

    semaphore = asyncio.Semaphore(max(1, max_workers))

    async def _run(item: T) -> Any:
        async with semaphore:
            return await worker(item)

    items = list(items)
    results = await asyncio.gather(*(_run(item) for item in items), return_exceptions=True)
    for item, outcome in zip(items, results):
        if isinstance(outcome, asyncio.CancelledError):
            raise outcome
        if isinstance(outcome, BaseException):
            LOGGER.error("Worker failed for %r: %s", item, outcome, exc_info=outcome)
    return results


__all__ = ["run_bounded"]
