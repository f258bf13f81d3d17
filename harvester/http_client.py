"""Rate-limited admission of upstream HTTP calls with per-request retry policy."""

from __future__ import annotations

import asyncio
import logging
import random
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable

import httpx

from .config import RetryConfig

LOGGER = logging.getLogger(__name__)


class HttpFetchError(RuntimeError):
    """Raised when a request cannot be admitted to the wire at all."""


class FetchOutcome(str, Enum):
    OK = "ok"
    NOT_FOUND = "not_found"
    FORBIDDEN = "forbidden"
    EXHAUSTED = "exhausted"


@dataclass(slots=True)
class ApiRequest:
    path: str
    params: dict[str, Any] = field(default_factory=dict)
    label: str = ""

    def describe(self) -> str:
        return self.label or self.path


@dataclass(slots=True)
class FetchResult:
    outcome: FetchOutcome
    payload: Any = None
    status_code: int | None = None
    attempts: int = 0
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.outcome is FetchOutcome.OK


@dataclass(slots=True)
class _PendingRequest:
    request: ApiRequest
    future: asyncio.Future


class RateLimitedFetchQueue:
    """Admit upstream calls under a global requests-per-second ceiling.

    Any number of coroutines may ``submit`` concurrently. Each wire attempt is
    appended to a FIFO drained by a single dispatcher task which spaces dispatch
    start times at least ``1 / requests_per_second`` apart. Retry policy is
    applied per request in the submitting coroutine, so a request sleeping off a
    429 or a transient failure never holds up the others.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        requests_per_second: float,
        clock: Callable[[], float] | None = None,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
        jitter: Callable[[float, float], float] | None = None,
    ) -> None:
        self._client = client
        self._min_interval = 1.0 / requests_per_second if requests_per_second > 0 else 0.0
        self._clock = clock or time.monotonic
        self._sleep = sleep or asyncio.sleep
        self._jitter = jitter or random.uniform
        self._pending: deque[_PendingRequest] = deque()
        self._wakeup: asyncio.Event | None = None
        self._dispatcher: asyncio.Task | None = None
        self._in_flight: set[asyncio.Task] = set()
        self._last_dispatch_at: float | None = None
        self._closed = False
        self.dispatched = 0

    async def __aenter__(self) -> "RateLimitedFetchQueue":
        return self

    async def __aexit__(self, *_exc_info) -> None:
        await self.aclose()

    @property
    def min_interval(self) -> float:
        return self._min_interval

    async def submit(self, request: ApiRequest, retry: RetryConfig) -> FetchResult:
        """Send ``request`` and classify the result, retrying transient failures."""

        max_attempts = max(1, retry.max_attempts)
        failures = 0
        last_error: str | None = None
        last_status: int | None = None

        while True:
            try:
                response = await self._admit(request)
            except httpx.TransportError as exc:
                failures += 1
                last_status = None
                last_error = f"{type(exc).__name__}: {exc}"
            else:
                status = response.status_code
                if status == httpx.codes.TOO_MANY_REQUESTS:
                    LOGGER.warning(
                        "Rate limited on %s; backing off %.0fs",
                        request.describe(),
                        retry.rate_limit_backoff,
                    )
                    await self._sleep(retry.rate_limit_backoff)
                    continue
                if 200 <= status < 300:
                    return FetchResult(
                        FetchOutcome.OK,
                        payload=_decode_json(response),
                        status_code=status,
                        attempts=failures + 1,
                    )
                if status == httpx.codes.NOT_FOUND:
                    return FetchResult(
                        FetchOutcome.NOT_FOUND,
                        status_code=status,
                        attempts=failures + 1,
                        error="Not found (404)",
                    )
                if status == httpx.codes.FORBIDDEN:
                    return FetchResult(
                        FetchOutcome.FORBIDDEN,
                        status_code=status,
                        attempts=failures + 1,
                        error="Access forbidden (403)",
                    )
                failures += 1
                last_status = status
                last_error = f"Unexpected status {status}"

            if failures >= max_attempts:
                LOGGER.error(
                    "Giving up on %s after %d attempts: %s",
                    request.describe(),
                    failures,
                    last_error,
                )
                return FetchResult(
                    FetchOutcome.EXHAUSTED,
                    status_code=last_status,
                    attempts=failures,
                    error=f"Failed after {failures} attempts: {last_error}",
                )

            delay = self._jitter(retry.min_delay, retry.max_delay)
            LOGGER.warning(
                "Attempt %d/%d for %s failed (%s); retrying in %.2fs",
                failures,
                max_attempts,
                request.describe(),
                last_error,
                delay,
            )
            await self._sleep(delay)

    async def _admit(self, request: ApiRequest) -> httpx.Response:
        if self._closed:
            raise HttpFetchError("Fetch queue is closed")
        loop = asyncio.get_running_loop()
        future: asyncio.Future = loop.create_future()
        self._pending.append(_PendingRequest(request=request, future=future))
        self._ensure_dispatcher()
        assert self._wakeup is not None
        self._wakeup.set()
        return await future

    def _ensure_dispatcher(self) -> None:
        if self._wakeup is None:
            self._wakeup = asyncio.Event()
        if self._dispatcher is None or self._dispatcher.done():
            self._dispatcher = asyncio.create_task(self._drain(), name="fetch-queue-dispatcher")

    async def _drain(self) -> None:
        assert self._wakeup is not None
        while not self._closed:
            if not self._pending:
                self._wakeup.clear()
                await self._wakeup.wait()
                continue

            if self._last_dispatch_at is not None:
                elapsed = self._clock() - self._last_dispatch_at
                if elapsed < self._min_interval:
                    await self._sleep(self._min_interval - elapsed)

            pending = self._pending.popleft()
            if pending.future.done():
                continue
            self._last_dispatch_at = self._clock()
            self.dispatched += 1
            task = asyncio.create_task(self._send(pending))
            self._in_flight.add(task)
            task.add_done_callback(self._in_flight.discard)

    async def _send(self, pending: _PendingRequest) -> None:
        request = pending.request
        try:
            response = await self._client.get(request.path, params=request.params)
        except asyncio.CancelledError:
            if not pending.future.done():
                pending.future.set_exception(HttpFetchError("Fetch queue closed during request"))
            raise
        except Exception as exc:
            if not pending.future.done():
                pending.future.set_exception(exc)
            return
        if not pending.future.done():
            pending.future.set_result(response)

    async def aclose(self) -> None:
        self._closed = True
        if self._dispatcher is not None:
            self._dispatcher.cancel()
            try:
                await self._dispatcher
            except asyncio.CancelledError:
                pass
            self._dispatcher = None
        in_flight = list(self._in_flight)
        for task in in_flight:
            task.cancel()
        if in_flight:
            await asyncio.gather(*in_flight, return_exceptions=True)
        while self._pending:
            pending = self._pending.popleft()
            if not pending.future.done():
                pending.future.set_exception(HttpFetchError("Fetch queue closed before dispatch"))


def _decode_json(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        LOGGER.warning("Non-JSON body from %s", response.request.url if response.request else "upstream")
        return None


__all__ = [
    "ApiRequest",
    "FetchOutcome",
    "FetchResult",
    "HttpFetchError",
    "RateLimitedFetchQueue",
]
