"""
Timeout race for units of work.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, TypeVar

from stateset_gateway.errors import OperationTimeoutError

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

T = TypeVar("T")


async def run_with_timeout(
    operation: Callable[[], Awaitable[T]],
    timeout: float | None,
    operation_name: str = "unknown",
) -> T:
    """Run an operation, failing if it does not finish in time.

    The work is cancelled when the timer wins.

    Args:
        operation: Async operation to run
        timeout: Seconds allowed, or None for no limit
        operation_name: Name carried by the timeout error

    Returns:
        The operation's result

    Raises:
        OperationTimeoutError: If the timeout elapsed first
    """
    if timeout is None:
        return await operation()
    try:
        return await asyncio.wait_for(operation(), timeout)
    except asyncio.TimeoutError as e:
        raise OperationTimeoutError(operation_name, timeout) from e
