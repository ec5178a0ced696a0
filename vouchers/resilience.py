"""
Bounded waits for external collaborator calls.

The transfer collaborator is the only point where registration or a claim
suspends. ``Timeout`` runs the call on a worker thread and stops waiting once
the bound elapses, so the caller can void the transfer and roll back instead
of holding its issuance lock indefinitely.

Usage
─────

    timeout = Timeout(seconds=5.0, name="claim.credit")
    result = timeout.execute(lambda: collaborator.credit(...))

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import concurrent.futures
import functools
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional, TypeVar

T = TypeVar("T")


class OperationTimeout(Exception):
    """Raised when an operation exceeds its bound."""

    def __init__(self, operation: str, timeout_seconds: float):
        self.operation = operation
        self.timeout_seconds = timeout_seconds
        super().__init__(f"Operation '{operation}' timed out after {timeout_seconds}s")


@dataclass
class TimeoutMetrics:
    total_calls: int = 0
    successful_calls: int = 0
    failed_calls: int = 0
    timed_out_calls: int = 0
    total_duration_seconds: float = 0.0


class Timeout:
    """
    Timeout pattern for bounded latency.

    The wrapped callable keeps running on its worker thread after a timeout;
    callers must make the late result harmless (the transfer boundary does so
    by voiding the transfer reference).

    Example:
        timeout = Timeout(seconds=5.0)

        @timeout
        def slow_operation():
            return external_service.call()
    """

    def __init__(
        self,
        seconds: float,
        name: str = "operation",
        on_timeout: Optional[Callable[[], None]] = None,
    ):
        if seconds <= 0:
            raise ValueError("timeout must be positive")
        self.seconds = seconds
        self.name = name
        self._metrics = TimeoutMetrics()
        self._lock = threading.Lock()
        self._on_timeout = on_timeout

    @property
    def metrics(self) -> TimeoutMetrics:
        with self._lock:
            return TimeoutMetrics(
                total_calls=self._metrics.total_calls,
                successful_calls=self._metrics.successful_calls,
                failed_calls=self._metrics.failed_calls,
                timed_out_calls=self._metrics.timed_out_calls,
                total_duration_seconds=self._metrics.total_duration_seconds,
            )

    def execute(self, func: Callable[[], T]) -> T:
        """Execute ``func`` and wait at most ``seconds`` for its result."""
        with self._lock:
            self._metrics.total_calls += 1

        start_time = time.monotonic()
        executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=1, thread_name_prefix=f"timeout-{self.name}"
        )
        try:
            future = executor.submit(func)
            try:
                result = future.result(timeout=self.seconds)
            except concurrent.futures.TimeoutError:
                with self._lock:
                    self._metrics.timed_out_calls += 1
                if self._on_timeout:
                    self._on_timeout()
                raise OperationTimeout(self.name, self.seconds) from None
            except Exception:
                with self._lock:
                    self._metrics.failed_calls += 1
                raise
            with self._lock:
                self._metrics.successful_calls += 1
                self._metrics.total_duration_seconds += time.monotonic() - start_time
            return result
        finally:
            # Do not join a timed-out worker.
            executor.shutdown(wait=False)

    def __call__(self, func: Callable[..., T]) -> Callable[..., T]:
        """Decorator for timeout protection."""
        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> T:
            return self.execute(lambda: func(*args, **kwargs))
        return wrapper
