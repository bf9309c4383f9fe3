"""Shared helpers: package logger, polling and formatting."""

import logging
from typing import Awaitable, Callable, List

from tenacity import AsyncRetrying, RetryError, retry_if_result, stop_after_delay, wait_fixed

from .exceptions import OperationTimeoutError

logger = logging.getLogger("infrahub-backup")


async def wait_until(
    check: Callable[[], Awaitable[bool]],
    timeout: float,
    interval: float,
    description: str,
) -> None:
    """Poll ``check`` until it returns True.

    ``check`` may be any callable returning an awaitable, lambdas and
    partials included. Exceptions raised by ``check`` are not retried;
    callers decide which failures mean "not yet".

    Raises:
        OperationTimeoutError: If ``check`` is still False after ``timeout`` seconds
    """
    retrying = AsyncRetrying(
        stop=stop_after_delay(timeout),
        wait=wait_fixed(interval),
        retry=retry_if_result(lambda ready: not ready),
    )

    # tenacity only awaits callables it recognises as coroutine functions
    async def _attempt() -> bool:
        return bool(await check())

    try:
        await retrying(_attempt)
    except RetryError as err:
        raise OperationTimeoutError(
            f"timed out after {timeout:g}s waiting for {description}"
        ) from err


def non_empty_lines(output: str) -> List[str]:
    return [line.strip() for line in output.splitlines() if line.strip()]


def format_bytes(size: int) -> str:
    """Format a byte count as a human readable string (1024 based)."""
    unit = 1024
    if size < unit:
        return f"{size} B"
    div, exp = unit, 0
    n = size // unit
    while n >= unit:
        div *= unit
        exp += 1
        n //= unit
    return f"{size / div:.1f} {'KMGTPE'[exp]}iB"
