import asyncio
import unittest

import httpx

from factories import API_BASE_URL, FakeClock

from harvester.config import RetryConfig
from harvester.http_client import ApiRequest, FetchOutcome, HttpFetchError, RateLimitedFetchQueue


def _queue(handler, clock: FakeClock, *, rps: float = 1000.0) -> tuple[RateLimitedFetchQueue, httpx.AsyncClient]:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url=API_BASE_URL)
    queue = RateLimitedFetchQueue(
        client,
        requests_per_second=rps,
        clock=clock,
        sleep=clock.sleep,
        jitter=lambda low, high: low,
    )
    return queue, client


class FetchClassificationTestCase(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.clock = FakeClock()
        self.calls: list[str] = []
        self.responses: list[httpx.Response] = []

        def handler(request: httpx.Request) -> httpx.Response:
            self.calls.append(request.url.path)
            if len(self.responses) > 1:
                return self.responses.pop(0)
            return self.responses[0]

        self.queue, self.client = _queue(handler, self.clock)

    async def asyncTearDown(self) -> None:
        await self.queue.aclose()
        await self.client.aclose()

    async def test_success_returns_json_payload(self) -> None:
        self.responses = [httpx.Response(200, json={"ok": True})]

        result = await self.queue.submit(ApiRequest("/v1/thing"), RetryConfig())

        self.assertIs(result.outcome, FetchOutcome.OK)
        self.assertEqual(result.payload, {"ok": True})
        self.assertEqual(self.calls, ["/v1/thing"])

    async def test_invalid_json_is_ok_without_payload(self) -> None:
        self.responses = [httpx.Response(200, text="<html>")]

        result = await self.queue.submit(ApiRequest("/v1/thing"), RetryConfig())

        self.assertIs(result.outcome, FetchOutcome.OK)
        self.assertIsNone(result.payload)

    async def test_retry_budget_bounds_server_errors(self) -> None:
        self.responses = [httpx.Response(503)]
        retry = RetryConfig(max_attempts=3, min_delay=1.0, max_delay=5.0)

        result = await self.queue.submit(ApiRequest("/v1/thing"), retry)

        self.assertIs(result.outcome, FetchOutcome.EXHAUSTED)
        self.assertEqual(len(self.calls), 3)
        self.assertEqual(result.attempts, 3)
        self.assertEqual(result.status_code, 503)

    async def test_transient_then_success(self) -> None:
        self.responses = [httpx.Response(500), httpx.Response(502), httpx.Response(200, json={"n": 1})]

        result = await self.queue.submit(ApiRequest("/v1/thing"), RetryConfig(max_attempts=3))

        self.assertTrue(result.ok)
        self.assertEqual(len(self.calls), 3)

    async def test_rate_limit_does_not_consume_budget(self) -> None:
        self.responses = [httpx.Response(429), httpx.Response(429), httpx.Response(200, json={})]
        retry = RetryConfig(max_attempts=1, rate_limit_backoff=30.0)

        result = await self.queue.submit(ApiRequest("/v1/thing"), retry)

        self.assertTrue(result.ok)
        self.assertEqual(len(self.calls), 3)
        self.assertEqual(self.clock.sleeps.count(30.0), 2)

    async def test_not_found_is_permanent(self) -> None:
        self.responses = [httpx.Response(404)]

        result = await self.queue.submit(ApiRequest("/v1/thing"), RetryConfig(max_attempts=5))

        self.assertIs(result.outcome, FetchOutcome.NOT_FOUND)
        self.assertEqual(len(self.calls), 1)

    async def test_forbidden_is_permanent(self) -> None:
        self.responses = [httpx.Response(403)]

        result = await self.queue.submit(ApiRequest("/v1/thing"), RetryConfig(max_attempts=5))

        self.assertIs(result.outcome, FetchOutcome.FORBIDDEN)
        self.assertEqual(len(self.calls), 1)

    async def test_other_client_errors_are_transient(self) -> None:
        self.responses = [httpx.Response(400)]

        result = await self.queue.submit(ApiRequest("/v1/thing"), RetryConfig(max_attempts=2))

        self.assertIs(result.outcome, FetchOutcome.EXHAUSTED)
        self.assertEqual(len(self.calls), 2)


class TransportErrorTestCase(unittest.IsolatedAsyncioTestCase):
    async def test_timeouts_count_against_budget(self) -> None:
        clock = FakeClock()
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            raise httpx.ReadTimeout("timed out", request=request)

        queue, client = _queue(handler, clock)
        try:
            result = await queue.submit(ApiRequest("/v1/slow"), RetryConfig(max_attempts=4, min_delay=0.5))
        finally:
            await queue.aclose()
            await client.aclose()

        self.assertIs(result.outcome, FetchOutcome.EXHAUSTED)
        self.assertEqual(len(calls), 4)
        self.assertIn("ReadTimeout", result.error)
        self.assertEqual(clock.sleeps.count(0.5), 3)


class PacingTestCase(unittest.IsolatedAsyncioTestCase):
    async def test_dispatches_are_spaced_by_min_interval(self) -> None:
        clock = FakeClock()
        queue, client = _queue(lambda request: httpx.Response(200, json={}), clock, rps=10.0)
        try:
            results = await asyncio.gather(
                *(queue.submit(ApiRequest(f"/v1/item/{index}"), RetryConfig()) for index in range(5))
            )
        finally:
            await queue.aclose()
            await client.aclose()

        self.assertTrue(all(result.ok for result in results))
        self.assertEqual(queue.dispatched, 5)
        self.assertEqual(len(clock.sleeps), 4)
        for pause in clock.sleeps:
            self.assertAlmostEqual(pause, 0.1)
        self.assertAlmostEqual(clock.now, 0.4)

    async def test_backing_off_request_does_not_block_others(self) -> None:
        clock = FakeClock()
        seen: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request.url.path)
            if request.url.path == "/v1/limited" and seen.count("/v1/limited") == 1:
                return httpx.Response(429)
            return httpx.Response(200, json={})

        queue, client = _queue(handler, clock)
        try:
            limited, other = await asyncio.gather(
                queue.submit(ApiRequest("/v1/limited"), RetryConfig(rate_limit_backoff=30.0)),
                queue.submit(ApiRequest("/v1/other"), RetryConfig()),
            )
        finally:
            await queue.aclose()
            await client.aclose()

        self.assertTrue(limited.ok)
        self.assertTrue(other.ok)
        self.assertEqual(seen, ["/v1/limited", "/v1/other", "/v1/limited"])


class QueueLifecycleTestCase(unittest.IsolatedAsyncioTestCase):
    async def test_submit_after_close_raises(self) -> None:
        clock = FakeClock()
        queue, client = _queue(lambda request: httpx.Response(200, json={}), clock)
        async with queue:
            result = await queue.submit(ApiRequest("/v1/thing"), RetryConfig())
            self.assertTrue(result.ok)
        await client.aclose()

        with self.assertRaises(HttpFetchError):
            await queue.submit(ApiRequest("/v1/thing"), RetryConfig())

    async def test_close_fails_in_flight_and_queued_requests(self) -> None:
        started = asyncio.Event()
        release = asyncio.Event()

        async def handler(request: httpx.Request) -> httpx.Response:
            started.set()
            await release.wait()
            return httpx.Response(200, json={})

        async def held_sleep(seconds: float) -> None:
            await release.wait()

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url=API_BASE_URL)
        queue = RateLimitedFetchQueue(client, requests_per_second=10.0, clock=FakeClock(), sleep=held_sleep)
        sending = asyncio.create_task(queue.submit(ApiRequest("/v1/first"), RetryConfig()))
        waiting = asyncio.create_task(queue.submit(ApiRequest("/v1/second"), RetryConfig()))
        await started.wait()

        await queue.aclose()
        await client.aclose()

        with self.assertRaisesRegex(HttpFetchError, "during request"):
            await sending
        with self.assertRaisesRegex(HttpFetchError, "before dispatch"):
            await waiting
        self.assertEqual(queue.dispatched, 1)


if __name__ == "__main__":
    unittest.main()
