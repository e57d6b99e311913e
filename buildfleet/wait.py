"""Bounded polling.

Every wait in buildfleet has a deadline: instance boot during launch,
and callers waiting for a Computer to observe its preemption.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable

from buildfleet.core.exceptions import ProvisioningError, TimeoutError


class _Deadline:
    __slots__ = ("_loop", "_expires", "_timeout", "_description")

    def __init__(self, timeout: float, description: str) -> None:
        self._loop = asyncio.get_running_loop()
        self._expires = self._loop.time() + timeout
        self._timeout = timeout
        self._description = description

    async def pause(self, interval: float) -> None:
        """Sleep up to ``interval``, raising once the deadline has passed."""
        remaining = self._expires - self._loop.time()
        if remaining <= 0:
            raise TimeoutError(
                f"Timeout waiting for {self._description} after {self._timeout:.1f}s"
            )
        await asyncio.sleep(min(interval, remaining))


async def wait_for_ready[T](
    poll_fn: Callable[[], Awaitable[T | None]],
    ready_check: Callable[[T], bool],
    *,
    terminal_check: Callable[[T], bool] | None = None,
    timeout: float = 300.0,
    interval: float = 5.0,
    description: str = "resource",
) -> T:
    """Poll until a state passes ``ready_check`` and return it.

    A None from ``poll_fn`` means the resource is not visible yet.

    Raises:
        ProvisioningError: If ``terminal_check`` accepts a polled state.
        TimeoutError: If nothing ready was seen within ``timeout`` seconds.
    """
    deadline = _Deadline(timeout, description)

    while True:
        state = await poll_fn()
        if state is not None:
            if ready_check(state):
                return state
            if terminal_check is not None and terminal_check(state):
                raise ProvisioningError(f"{description} reached terminal state: {state}")
        await deadline.pause(interval)


async def await_condition(
    predicate: Callable[[], bool],
    *,
    timeout: float,
    interval: float = 1.0,
    description: str = "condition",
) -> None:
    """Poll a non-blocking predicate until it holds.

    Raises:
        TimeoutError: If the predicate is still False after ``timeout``.
    """
    deadline = _Deadline(timeout, description)
    while not predicate():
        await deadline.pause(interval)


__all__ = ["await_condition", "wait_for_ready"]
