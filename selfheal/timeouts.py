#!/usr/bin/env python3
"""Bounded calls to external collaborators (hypothesis source, tools)."""

from __future__ import annotations

import concurrent.futures
from typing import Any, Callable, Optional


class CallTimeoutError(TimeoutError):
    """The external call did not return within its time budget."""


def call_with_timeout(
    func: Callable[..., Any],
    *args: Any,
    timeout: Optional[float] = None,
    **kwargs: Any,
) -> Any:
    """Run ``func(*args, **kwargs)`` and wait at most ``timeout`` seconds.

    Exceptions raised by ``func`` propagate unchanged. On timeout the worker
    thread is abandoned (Python threads cannot be killed) and
    CallTimeoutError is raised. ``timeout=None`` or ``<= 0`` calls directly.
    """
    if timeout is None or timeout <= 0:
        return func(*args, **kwargs)

    executor = concurrent.futures.ThreadPoolExecutor(max_workers=1)
    future = executor.submit(func, *args, **kwargs)
    try:
        return future.result(timeout=timeout)
    except concurrent.futures.TimeoutError as exc:
        if future.done():
            # func itself raised a TimeoutError.
            raise
        name = getattr(func, "__qualname__", repr(func))
        raise CallTimeoutError(f"{name} timed out after {timeout:g}s") from exc
    finally:
        executor.shutdown(wait=False)
