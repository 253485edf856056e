"""
Async utilities for blocking collaborators.

The warehouse and the conversation store use synchronous SQLAlchemy
engines; run_sync() moves those calls onto a worker thread so a slow
query never stalls other turns streaming on the same event loop.
"""

import asyncio
import logging
import time
from typing import Any, Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def run_sync(func: Callable[..., T], *args: Any, timeout: float = 30, **kwargs: Any) -> T:
    """
    Run a synchronous function in a thread without blocking the event loop.

    Args:
        func: Synchronous callable to execute.
        *args: Positional arguments forwarded to func.
        timeout: Maximum seconds to wait.
        **kwargs: Keyword arguments forwarded to func.

    Returns:
        The return value of func.

    Raises:
        TimeoutError: If execution exceeds the timeout. The worker thread
            is not interrupted; its result is discarded.
    """
    name = getattr(func, "__qualname__", None) or getattr(func, "__name__", repr(func))
    start = time.perf_counter()
    try:
        result = await asyncio.wait_for(
            asyncio.to_thread(func, *args, **kwargs),
            timeout=timeout,
        )
    except asyncio.TimeoutError:
        elapsed = (time.perf_counter() - start) * 1000
        raise TimeoutError(f"{name} timed out after {elapsed:.0f}ms (limit {timeout}s)")
    logger.debug("run_sync %s completed in %.2fms", name, (time.perf_counter() - start) * 1000)
    return result
