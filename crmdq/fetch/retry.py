"""Retry classification and backoff computation for upstream requests."""
from __future__ import annotations

import random
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Mapping, Optional

import httpx
from dateutil import parser as dateparser

RETRYABLE_STATUSES = frozenset({429})


class ApiError(Exception):
    """HTTP-level failure returned by the remote object store."""

    def __init__(self, status: int, message: str, *, label: Optional[str] = None) -> None:
        super().__init__(f"API Error ({status}): {message}" if message else f"API Error ({status})")
        self.status = status
        self.message = message
        self.label = label

    @property
    def retryable(self) -> bool:
        return is_retryable_status(self.status)


def is_retryable_status(status: int) -> bool:
    """429 and every 5xx are transient; other statuses are final."""
    return status in RETRYABLE_STATUSES or 500 <= status <= 599


def error_message(response: httpx.Response) -> str:
    """Pull a human readable message out of an error body, if there is one."""
    try:
        body = response.json()
    except ValueError:
        return response.reason_phrase or ""
    if isinstance(body, dict):
        for key in ("message", "error"):
            if body.get(key):
                return str(body[key])
    return response.reason_phrase or ""


def parse_retry_after(value: Optional[str], *, now: Optional[datetime] = None) -> Optional[float]:
    """Return seconds to wait from a Retry-After header (delta-seconds or HTTP-date)."""
    if value is None:
        return None
    text = value.strip()
    if not text:
        return None
    try:
        return max(0.0, float(text))
    except ValueError:
        pass
    try:
        target = dateparser.parse(text)
    except (ValueError, OverflowError):
        return None
    if target.tzinfo is None:
        target = target.replace(tzinfo=timezone.utc)
    current = now or datetime.now(timezone.utc)
    return max(0.0, (target - current).total_seconds())


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff with full jitter."""

    max_retries: int = 5
    base_delay: float = 0.5
    max_backoff: float = 30.0
    max_retry_after: float = 120.0

    def backoff(self, attempt: int, rng: Callable[[float, float], float] = random.uniform) -> float:
        """Full jitter: uniform(0, min(cap, base * 2**attempt)) for a zero-based attempt."""
        ceiling = min(self.max_backoff, self.base_delay * (2 ** attempt))
        return rng(0.0, ceiling)

    def delay_for(
        self,
        attempt: int,
        headers: Optional[Mapping[str, str]] = None,
        rng: Callable[[float, float], float] = random.uniform,
    ) -> float:
        """Prefer the upstream Retry-After signal over computed backoff."""
        if headers is not None:
            retry_after = parse_retry_after(headers.get("retry-after"))
            if retry_after is not None:
                return min(retry_after, self.max_retry_after)
        return self.backoff(attempt, rng)
