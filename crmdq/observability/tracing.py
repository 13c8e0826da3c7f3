"""Tracing helpers for scheduled requests and scans."""
from __future__ import annotations

import contextlib
import time
from typing import Iterator, Optional

import structlog
from structlog.contextvars import bind_contextvars, clear_contextvars


def _logger():
    return structlog.get_logger("crmdq.trace")


def set_context(*, scan_id: str, tool: str, object_type: str) -> None:
    bind_contextvars(scan_id=scan_id, tool=tool, object_type=object_type)
    _logger().debug("trace_context", scan_id=scan_id, tool=tool, object_type=object_type)


def clear_context() -> None:
    clear_contextvars()


@contextlib.contextmanager
def span(*, name: str, label: Optional[str] = None) -> Iterator[None]:
    start = time.perf_counter()
    try:
        yield
    finally:
        elapsed_ms = int((time.perf_counter() - start) * 1000)
        _logger().debug("trace_span", span=name, label=label, elapsed_ms=elapsed_ms)


def log_retry(attempt: int, *, label: str, reason: str, delay: float) -> None:
    _logger().warning("request_retry", attempt=attempt, label=label, reason=reason, delay_s=round(delay, 3))


def log_request_result(*, label: str, status: int, elapsed_ms: int, delay: float) -> None:
    _logger().info(
        "request_result",
        label=label,
        status=status,
        elapsed_ms=elapsed_ms,
        next_delay_s=round(delay, 3),
    )
