import asyncio

import httpx
import pytest

from crmdq.fetch.retry import ApiError, RetryPolicy, parse_retry_after
from crmdq.fetch.scheduler import RequestScheduler
from crmdq.observability.metrics import MetricsRegistry


class SleepRecorder:
    def __init__(self):
        self.calls = []

    async def __call__(self, delay):
        self.calls.append(delay)


def _scheduler(sleep, **kwargs):
    kwargs.setdefault("rng", lambda low, high: high)
    kwargs.setdefault("clock", lambda: 0.0)
    return RequestScheduler(sleep=sleep, **kwargs)


def _responses(*items):
    queue = list(items)
    calls = []

    async def task():
        calls.append(1)
        item = queue.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    return task, calls


def test_single_flight_in_fifo_order():
    async def _run():
        in_flight = 0
        peak = 0
        order = []

        def make(index):
            async def task():
                nonlocal in_flight, peak
                in_flight += 1
                peak = max(peak, in_flight)
                await asyncio.sleep(0)
                order.append(index)
                in_flight -= 1
                return httpx.Response(200)

            return task

        async with _scheduler(SleepRecorder()) as scheduler:
            responses = await asyncio.gather(*(scheduler.submit(make(index)) for index in range(10)))
        assert all(response.status_code == 200 for response in responses)
        assert peak == 1
        assert order == list(range(10))

    asyncio.run(_run())


def test_pacing_spaces_requests_by_delay():
    async def _run():
        sleep = SleepRecorder()
        async with _scheduler(sleep, base_delay=0.33) as scheduler:
            for _ in range(3):
                await scheduler.submit(_responses(httpx.Response(200))[0])
        assert sleep.calls == [pytest.approx(0.33), pytest.approx(0.33)]

    asyncio.run(_run())


def test_retries_429_with_backoff_then_succeeds():
    async def _run():
        sleep = SleepRecorder()
        metrics = MetricsRegistry()
        task, calls = _responses(httpx.Response(429), httpx.Response(429), httpx.Response(200, json={"ok": True}))
        async with _scheduler(sleep, metrics=metrics, retry_policy=RetryPolicy(base_delay=0.5)) as scheduler:
            response = await scheduler.submit(task)
        assert response.status_code == 200
        assert len(calls) == 3
        assert sleep.calls == [0.5, 1.0]
        assert metrics.get("retries") == 2
        assert metrics.get("http_429") == 2

    asyncio.run(_run())


def test_retry_after_header_wins_over_backoff():
    async def _run():
        sleep = SleepRecorder()
        task, _ = _responses(httpx.Response(503, headers={"Retry-After": "7"}), httpx.Response(200))
        async with _scheduler(sleep) as scheduler:
            await scheduler.submit(task)
        assert sleep.calls == [7.0]

    asyncio.run(_run())


def test_client_error_is_not_retried():
    async def _run():
        sleep = SleepRecorder()
        task, calls = _responses(httpx.Response(400, json={"message": "bad filter"}), httpx.Response(200))
        async with _scheduler(sleep) as scheduler:
            with pytest.raises(ApiError) as excinfo:
                await scheduler.submit(task)
        assert excinfo.value.status == 400
        assert excinfo.value.message == "bad filter"
        assert not excinfo.value.retryable
        assert len(calls) == 1
        assert sleep.calls == []

    asyncio.run(_run())


def test_exhausted_retries_raise_last_status():
    async def _run():
        task, calls = _responses(*(httpx.Response(500) for _ in range(3)))
        async with _scheduler(SleepRecorder(), retry_policy=RetryPolicy(max_retries=2)) as scheduler:
            with pytest.raises(ApiError) as excinfo:
                await scheduler.submit(task)
        assert excinfo.value.status == 500
        assert excinfo.value.retryable
        assert len(calls) == 3

    asyncio.run(_run())


def test_transport_errors_retry_then_propagate():
    async def _run():
        metrics = MetricsRegistry()
        recovered, _ = _responses(httpx.ConnectError("refused"), httpx.Response(200))
        down, calls = _responses(*(httpx.ConnectError("refused") for _ in range(2)))
        async with _scheduler(SleepRecorder(), metrics=metrics, retry_policy=RetryPolicy(max_retries=1)) as scheduler:
            assert (await scheduler.submit(recovered)).status_code == 200
            with pytest.raises(httpx.ConnectError):
                await scheduler.submit(down)
        assert len(calls) == 2
        assert metrics.get("network_errors") == 3

    asyncio.run(_run())


def test_failed_task_does_not_block_later_tasks():
    async def _run():
        failing, _ = _responses(httpx.Response(404))
        ok, _ = _responses(httpx.Response(200))
        async with _scheduler(SleepRecorder()) as scheduler:
            results = await asyncio.gather(scheduler.submit(failing), scheduler.submit(ok), return_exceptions=True)
        assert isinstance(results[0], ApiError)
        assert results[1].status_code == 200

    asyncio.run(_run())


def test_delay_adapts_to_rate_limit_headers():
    async def _run():
        sleep = SleepRecorder()
        low = httpx.Response(
            200,
            headers={"x-hubspot-ratelimit-remaining": "2", "x-hubspot-ratelimit-interval-milliseconds": "10000"},
        )
        healthy = httpx.Response(
            200,
            headers={"x-hubspot-ratelimit-remaining": "100", "x-hubspot-ratelimit-interval-milliseconds": "10000"},
        )
        async with _scheduler(sleep, base_delay=0.33, max_delay=10.0) as scheduler:
            await scheduler.submit(_responses(low)[0])
            assert scheduler.delay == pytest.approx(5.0)
            await scheduler.submit(_responses(healthy)[0])
            assert sleep.calls[-1] == pytest.approx(5.0)
            assert scheduler.delay == pytest.approx(2.55)
            await scheduler.submit(_responses(httpx.Response(200))[0])
            assert scheduler.delay == pytest.approx(2.55)

    asyncio.run(_run())


def test_low_quota_growth_is_capped():
    async def _run():
        headers = {"x-hubspot-ratelimit-remaining": "0", "x-hubspot-ratelimit-interval-milliseconds": "60000"}
        async with _scheduler(SleepRecorder(), max_delay=4.0) as scheduler:
            await scheduler.submit(_responses(httpx.Response(200, headers=headers))[0])
            assert scheduler.delay == 4.0

    asyncio.run(_run())


def test_full_jitter_bounds():
    policy = RetryPolicy(base_delay=0.5, max_backoff=3.0)
    assert policy.backoff(0, lambda low, high: high) == 0.5
    assert policy.backoff(10, lambda low, high: high) == 3.0
    assert policy.backoff(4, lambda low, high: low) == 0.0


def test_parse_retry_after_http_date():
    from datetime import datetime, timezone

    now = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
    assert parse_retry_after("Mon, 01 Jan 2024 12:00:30 GMT", now=now) == pytest.approx(30.0)
    assert parse_retry_after("garbage") is None
    assert parse_retry_after("-3") == 0.0
