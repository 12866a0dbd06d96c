"""
Async Helpers
=============

Lets the orchestrator drive synchronous collaborators (SQLAlchemy
connectors, file and SQL cursor stores, blocking sinks) and native coroutine
collaborators the same way, each bounded by a timeout.
"""

import asyncio
import inspect
from typing import Any, Callable, Optional


async def call_maybe_async(func: Callable[..., Any], *args, **kwargs) -> Any:
    """
    Call ``func`` and await the result if it is awaitable.

    Synchronous callables run in the default thread pool so a blocking
    driver call never stalls the other entity loops.
    """
    if inspect.iscoroutinefunction(func) or inspect.iscoroutinefunction(getattr(func, "__call__", None)):
        return await func(*args, **kwargs)

    result = await asyncio.to_thread(func, *args, **kwargs)
    if inspect.isawaitable(result):
        return await result
    return result


async def call_with_timeout(
    func: Callable[..., Any],
    *args,
    timeout: Optional[float] = None,
    **kwargs
) -> Any:
    """
    ``call_maybe_async`` bounded by ``timeout`` seconds.

    Raises:
        asyncio.TimeoutError: the call did not finish in time. A synchronous
            call keeps running in its worker thread; its result is discarded.
    """
    return await asyncio.wait_for(call_maybe_async(func, *args, **kwargs), timeout=timeout)
