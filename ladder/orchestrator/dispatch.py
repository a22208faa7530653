"""Bounded blocking calls to backends and reviewers."""

from __future__ import annotations

import concurrent.futures
from typing import Any, Callable, Optional, TypeVar

from ladder.core.exceptions import DispatchTimeoutError

T = TypeVar("T")


def call_with_timeout(
    fn: Callable[..., T],
    timeout_seconds: Optional[float],
    *args: Any,
    operation: str = "call",
    **kwargs: Any,
) -> T:
    """Run ``fn`` on a worker thread and wait at most ``timeout_seconds``.

    A call that overruns is abandoned, not killed: the worker thread finishes
    in the background and its result is discarded.

    Raises:
        DispatchTimeoutError: If the call does not return in time.
    """
    if timeout_seconds is None or timeout_seconds <= 0:
        return fn(*args, **kwargs)

    executor = concurrent.futures.ThreadPoolExecutor(
        max_workers=1, thread_name_prefix=f"ladder-{operation}",
    )
    future = executor.submit(fn, *args, **kwargs)
    try:
        return future.result(timeout=timeout_seconds)
    except concurrent.futures.TimeoutError as e:
        future.cancel()
        raise DispatchTimeoutError(operation, timeout_seconds) from e
    finally:
        executor.shutdown(wait=False)
