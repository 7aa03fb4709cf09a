"""
Thread offloading for blocking directory and analytics calls.

Route handlers are async; the customer directory (SQLite) and the analytics
store block on disk. ``run_sync`` runs such a call on the default executor
with a deadline, so a stuck write cannot hold a request open indefinitely.
"""

import asyncio
import logging
from typing import Any, Callable, TypeVar

from vmize_gateway.core.errors import PersistenceFailure

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_TIMEOUT_S = 30.0


async def run_sync(func: Callable[..., T], *args: Any, timeout: float = DEFAULT_TIMEOUT_S) -> T:
    """Await ``func(*args)`` on a worker thread.

    Exceptions raised by *func* propagate unchanged.

    Raises:
        PersistenceFailure: *func* did not return within *timeout* seconds.
            The thread is not interrupted; its eventual result is dropped.
    """
    try:
        return await asyncio.wait_for(asyncio.to_thread(func, *args), timeout=timeout)
    except asyncio.TimeoutError as exc:
        label = getattr(func, "__qualname__", None) or repr(func)
        logger.error("blocking_call_timeout", extra={"call": label, "timeout_s": timeout})
        raise PersistenceFailure(
            detail=f"{label} did not finish within {timeout}s",
            context={"call": label},
        ) from exc
