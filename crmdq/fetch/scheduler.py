"""Single-flight request scheduler with adaptive pacing and retries.

Every call to the remote object store is funnelled through one
:class:`RequestScheduler`. Tasks are zero-argument coroutine functions that
return an :class:`httpx.Response`; they are executed strictly one at a time in
FIFO order by a single worker task, spaced at least ``delay`` seconds apart.

The delay adapts to the upstream rate-limit headers after every completed
request: it grows (up to ``max_delay``) when the remaining quota is low and
relaxes toward the per-request share of the advertised interval otherwise.

Transient failures (HTTP 429, 5xx and transport errors) are retried with full
jitter backoff, preferring an explicit ``Retry-After``. Abandoning the awaiting
caller does not cancel a task that is already queued or running.
"""
from __future__ import annotations

import asyncio
import random
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Mapping, Optional

import httpx
import structlog

from crmdq.fetch.retry import ApiError, RetryPolicy, error_message, is_retryable_status
from crmdq.observability.metrics import MetricsRegistry
from crmdq.observability.tracing import log_request_result, log_retry, span

LOGGER = structlog.get_logger(__name__)

Task = Callable[[], Awaitable[httpx.Response]]

DEFAULT_REMAINING_HEADER = "x-hubspot-ratelimit-remaining"
DEFAULT_INTERVAL_HEADER = "x-hubspot-ratelimit-interval-milliseconds"


@dataclass
class _Ticket:
    """A queued task and the future its caller is waiting on."""

    task: Task
    future: asyncio.Future
    label: str
    attempts: int = 0


def _header_number(headers: Mapping[str, str], name: str) -> Optional[float]:
    raw = headers.get(name)
    if raw is None:
        return None
    try:
        return float(raw)
    except (TypeError, ValueError):
        return None


class RequestScheduler:
    """FIFO, single in-flight gateway to the upstream API."""

    def __init__(
        self,
        *,
        base_delay: float = 0.33,
        min_delay: float = 0.1,
        max_delay: float = 10.0,
        low_quota_threshold: int = 5,
        retry_policy: Optional[RetryPolicy] = None,
        remaining_header: str = DEFAULT_REMAINING_HEADER,
        interval_header: str = DEFAULT_INTERVAL_HEADER,
        metrics: Optional[MetricsRegistry] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        rng: Callable[[float, float], float] = random.uniform,
    ) -> None:
        self.base_delay = base_delay
        self.min_delay = min(min_delay, base_delay)
        self.max_delay = max(max_delay, base_delay)
        self.low_quota_threshold = low_quota_threshold
        self.retry_policy = retry_policy or RetryPolicy()
        self._remaining_header = remaining_header
        self._interval_header = interval_header
        self._metrics = metrics or MetricsRegistry()
        self._sleep = sleep
        self._clock = clock
        self._rng = rng
        self._delay = base_delay
        self._last_finished: Optional[float] = None
        self._queue: asyncio.Queue[_Ticket] = asyncio.Queue()
        self._worker: Optional[asyncio.Task] = None
        self._closed = False

    @property
    def delay(self) -> float:
        """Current minimum spacing between two upstream requests, in seconds."""
        return self._delay

    @property
    def pending(self) -> int:
        """Number of tasks waiting for the worker."""
        return self._queue.qsize()

    async def __aenter__(self) -> "RequestScheduler":
        self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    def start(self) -> None:
        """Start the consumer task on the running loop if it is not running yet."""
        if self._closed:
            raise RuntimeError("scheduler is closed")
        if self._worker is None or self._worker.done():
            self._worker = asyncio.get_running_loop().create_task(self._run(), name="crmdq-scheduler")

    async def aclose(self) -> None:
        """Let queued work drain, then stop the worker."""
        if self._worker is None:
            self._closed = True
            return
        await self._queue.join()
        self._closed = True
        self._worker.cancel()
        try:
            await self._worker
        except asyncio.CancelledError:
            pass
        self._worker = None

    async def submit(self, task: Task, *, label: Optional[str] = None) -> httpx.Response:
        """Queue ``task`` and wait for its final response.

        Raises :class:`ApiError` for non-retryable statuses or once retries are
        exhausted, and re-raises the last transport error when the upstream
        stays unreachable.
        """
        self.start()
        loop = asyncio.get_running_loop()
        ticket = _Ticket(task=task, future=loop.create_future(), label=label or getattr(task, "__name__", "task"))
        await self._queue.put(ticket)
        return await ticket.future

    async def _run(self) -> None:
        while True:
            ticket = await self._queue.get()
            try:
                await self._pace()
                try:
                    response = await self._execute(ticket)
                except Exception as exc:  # delivered to the waiting caller
                    if not ticket.future.done():
                        ticket.future.set_exception(exc)
                else:
                    if not ticket.future.done():
                        ticket.future.set_result(response)
            finally:
                self._last_finished = self._clock()
                self._queue.task_done()

    async def _pace(self) -> None:
        if self._last_finished is None:
            return
        wait = self._delay - (self._clock() - self._last_finished)
        if wait > 0:
            await self._sleep(wait)

    async def _execute(self, ticket: _Ticket) -> httpx.Response:
        policy = self.retry_policy
        while True:
            ticket.attempts += 1
            retry_number = ticket.attempts - 1
            self._metrics.incr("requests")
            start = time.perf_counter()
            try:
                with span(name="request", label=ticket.label):
                    response = await ticket.task()
            except httpx.TransportError as exc:
                self._metrics.incr("network_errors")
                if retry_number >= policy.max_retries:
                    LOGGER.error("request_failed", label=ticket.label, attempts=ticket.attempts, reason=str(exc))
                    raise
                delay = policy.delay_for(retry_number, None, self._rng)
                await self._retry_pause(ticket, reason=f"{type(exc).__name__}: {exc}", delay=delay)
                continue

            elapsed_ms = int((time.perf_counter() - start) * 1000)
            self._adapt(response.headers)
            log_request_result(label=ticket.label, status=response.status_code, elapsed_ms=elapsed_ms, delay=self._delay)

            status = response.status_code
            if status < 400:
                return response
            if status == 429:
                self._metrics.incr("http_429")
            elif status >= 500:
                self._metrics.incr("http_5xx")
            if not is_retryable_status(status) or retry_number >= policy.max_retries:
                raise ApiError(status, error_message(response), label=ticket.label)
            delay = policy.delay_for(retry_number, response.headers, self._rng)
            await self._retry_pause(ticket, reason=f"HTTP {status}", delay=delay)

    async def _retry_pause(self, ticket: _Ticket, *, reason: str, delay: float) -> None:
        self._metrics.incr("retries")
        log_retry(ticket.attempts, label=ticket.label, reason=reason, delay=delay)
        if delay > 0:
            await self._sleep(delay)

    def _adapt(self, headers: Mapping[str, str]) -> None:
        remaining = _header_number(headers, self._remaining_header)
        interval_ms = _header_number(headers, self._interval_header)
        if remaining is None and interval_ms is None:
            return
        interval = interval_ms / 1000.0 if interval_ms and interval_ms > 0 else None
        share = interval / max(remaining, 1.0) if interval and remaining is not None else None

        if remaining is not None and remaining < self.low_quota_threshold:
            grown = max(self._delay * 2, self.base_delay, share or 0.0)
            new_delay = min(self.max_delay, grown)
        else:
            target = share if share is not None else self.base_delay
            new_delay = max(self.min_delay, (self._delay + target) / 2)
            new_delay = min(self.max_delay, new_delay)
        if new_delay != self._delay:
            LOGGER.debug("delay_adjusted", previous_s=round(self._delay, 3), delay_s=round(new_delay, 3), remaining=remaining)
        self._delay = new_delay
