"""Polling helper shared by the launch state machine and the pipeline step."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable


async def wait_for_ready[T](
    poll_fn: Callable[[], Awaitable[T | None]],
    ready_check: Callable[[T], bool],
    *,
    terminal_check: Callable[[T], Exception | None] | None = None,
    timeout: float = 300.0,
    interval: float = 5.0,
    description: str = "resource",
) -> T:
    """Wait until poll_fn returns something that passes ready_check.

    Args:
        poll_fn: Async function that polls for the resource state.
        ready_check: Function that returns True when resource is ready.
        terminal_check: Optional function returning the error to raise when
            the resource reached a terminal failure state, None otherwise.
        timeout: Maximum time to wait in seconds.
        interval: Time between polls in seconds.
        description: Description for error messages.

    Returns:
        The ready resource.

    Raises:
        TimeoutError: If timeout is exceeded.
    """
    loop = asyncio.get_running_loop()
    start = loop.time()

    while True:
        result = await poll_fn()

        if result is not None:
            if ready_check(result):
                return result

            if terminal_check is not None and (error := terminal_check(result)) is not None:
                raise error

        elapsed = loop.time() - start
        if elapsed > timeout:
            raise TimeoutError(f"Timeout waiting for {description} after {timeout:.1f}s")

        await asyncio.sleep(interval)
