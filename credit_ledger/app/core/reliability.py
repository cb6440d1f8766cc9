"""
Reliability Utilities.

Request-scoped timeouts around store calls.
"""

import asyncio
from typing import Any, Awaitable

from credit_ledger.app.core.exceptions import StoreTimeoutError


async def with_store_timeout(awaitable: Awaitable[Any], seconds: float) -> Any:
    """
    Await a store call, giving up after `seconds`.

    A non-positive value disables the timeout.

    Raises:
        StoreTimeoutError: If the call did not finish in time
    """
    if seconds is None or seconds <= 0:
        return await awaitable
    try:
        return await asyncio.wait_for(awaitable, timeout=seconds)
    except asyncio.TimeoutError as exc:
        raise StoreTimeoutError(seconds) from exc
