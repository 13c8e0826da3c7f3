"""Lightweight in-process metrics recorded alongside scan history."""
from __future__ import annotations

import contextlib
import time
from collections import defaultdict
from typing import Dict

import structlog

LOGGER = structlog.get_logger(__name__)


class MetricsRegistry:
    """Holds mutable counters for the current process."""

    def __init__(self) -> None:
        self._counters: Dict[str, int] = defaultdict(int)
        self._register_defaults()

    def _register_defaults(self) -> None:
        defaults = [
            "requests",
            "retries",
            "http_429",
            "http_5xx",
            "network_errors",
            "pages_fetched",
            "records_fetched",
            "clusters_found",
            "merges_ok",
            "merges_failed",
            "updates_ok",
            "updates_failed",
            "anomalies",
            "scan_duration_ms",
        ]
        for key in defaults:
            self._counters[key] = 0

    def incr(self, name: str, value: int = 1) -> None:
        """Increment the named counter by the supplied value."""
        self._counters[name] += value

    def get(self, name: str) -> int:
        """Return the current value for the counter, defaulting to zero."""
        return self._counters.get(name, 0)

    def snapshot(self) -> Dict[str, int]:
        """Return a shallow copy of all non-zero counters for reporting."""
        return {key: value for key, value in self._counters.items() if value}


@contextlib.contextmanager
def record_duration(registry: MetricsRegistry, metric_name: str):
    """Measure elapsed time for a block and emit it when done."""
    start = time.perf_counter()
    try:
        yield
    finally:
        elapsed = time.perf_counter() - start
        registry.incr(metric_name, int(elapsed * 1000))
        LOGGER.info("timer_stop", metric=metric_name, duration_ms=int(elapsed * 1000))
