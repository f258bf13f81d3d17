"""Upstream content API endpoints, funnelled through one fetch queue."""

from __future__ import annotations

import logging
from urllib.parse import quote

import httpx

from .config import ApiConfig, HarvestConfig, PaginationConfig, RetryConfig, page_retry_config, product_retry_config
from .http_client import ApiRequest, FetchResult, RateLimitedFetchQueue

LOGGER = logging.getLogger(__name__)


def build_async_client(
    config: HarvestConfig,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> httpx.AsyncClient:
    """Create the shared ``AsyncClient`` carrying auth headers and timeouts."""

    if not config.api.api_key:
        LOGGER.warning("No upstream API key configured; requests will be rejected")
    kwargs: dict[str, object] = {
        "base_url": config.api.base_url,
        "headers": config.api.auth_headers(),
        "timeout": config.timeout.request_timeout,
        "follow_redirects": True,
    }
    if transport is not None:
        kwargs["transport"] = transport
    return httpx.AsyncClient(**kwargs)


class ContentApiClient:
    """Builds listing and product-detail requests for the upstream API."""

    def __init__(
        self,
        queue: RateLimitedFetchQueue,
        api_config: ApiConfig,
        pagination: PaginationConfig,
        *,
        page_retry: RetryConfig | None = None,
        product_retry: RetryConfig | None = None,
    ) -> None:
        self._queue = queue
        self._api = api_config
        self._pagination = pagination
        self._page_retry = page_retry or page_retry_config()
        self._product_retry = product_retry or product_retry_config()

    @property
    def page_size(self) -> int:
        return self._pagination.page_size

    async def hashtag_posts(self, tag: str, offset: int) -> FetchResult:
        request = ApiRequest(
            path=f"/v1/hashtag/posts/{quote(tag, safe='')}",
            params={
                "count": self._pagination.page_size,
                "offset": offset,
                "region": self._api.region,
            },
            label=f"hashtag #{tag} @ {offset}",
        )
        return await self._queue.submit(request, self._page_retry)

    async def user_posts(self, username: str, offset: int) -> FetchResult:
        request = ApiRequest(
            path="/v1/post/user/posts",
            params={
                "username": username,
                "count": self._pagination.page_size,
                "offset": offset,
                "region": self._api.region,
                "with_pinned_posts": 1,
            },
            label=f"@{username} @ {offset}",
        )
        return await self._queue.submit(request, self._page_retry)

    async def product_detail(self, product_id: str) -> FetchResult:
        request = ApiRequest(
            path=f"/v1/shop/product/{quote(product_id, safe='')}",
            params={"region": self._api.region},
            label=f"product {product_id}",
        )
        return await self._queue.submit(request, self._product_retry)


__all__ = ["ContentApiClient", "build_async_client"]
