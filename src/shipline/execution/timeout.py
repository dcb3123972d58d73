"""Per-job deadlines.

The scheduler cannot interrupt a tool that is already running; it can only
stop waiting for it.  ``run_with_timeout`` runs the body on a throwaway
worker thread and gives up at the deadline, leaving the thread to drain on
its own.  The job is then recorded as failed with category TIMEOUT.

Tags:
    timeout, deadline, execution, shipline
"""

from __future__ import annotations

import contextvars
import time
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import TypeVar

R = TypeVar("R")


class TimeoutExpired(TimeoutError):
    """A job body did not finish before its deadline.

    Attributes:
        operation: Job (or tool) that overran
        timeout: Deadline in seconds
        elapsed: Seconds waited before giving up, when measured
    """

    def __init__(self, timeout: float, elapsed: float | None = None, operation: str = "job"):
        self.operation = operation
        self.timeout = timeout
        self.elapsed = elapsed
        detail = f"'{operation}' exceeded its {timeout:g}s deadline"
        if elapsed is not None:
            detail = f"{detail} after waiting {elapsed:.2f}s"
        super().__init__(detail)


def run_with_timeout(
    func: Callable[..., R],
    timeout_seconds: float,
    operation: str | None = None,
    args: Sequence[object] = (),
) -> R:
    """Call ``func(*args)`` and wait at most ``timeout_seconds`` for it.

    The body runs in a copy of the caller's context, so context variables
    bound by the caller (the run's log fields) are visible inside it.
    Exceptions raised by ``func`` propagate unchanged.

    Raises:
        TimeoutExpired: The deadline passed first
        ValueError: ``timeout_seconds`` is not positive
    """
    if timeout_seconds <= 0:
        raise ValueError(f"timeout_seconds must be > 0, got {timeout_seconds}")

    label = operation or getattr(func, "__name__", "job")
    worker = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"shipline-{label}")
    started = time.monotonic()
    try:
        # the body logs with the caller's bound run_id
        return worker.submit(contextvars.copy_context().run, func, *args).result(timeout=timeout_seconds)
    except FutureTimeout:
        raise TimeoutExpired(timeout_seconds, time.monotonic() - started, label) from None
    finally:
        # never joined: an overrunning body keeps its thread until it returns
        worker.shutdown(wait=False)
