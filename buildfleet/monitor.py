"""Generic background monitor for emitting events.

A monitor periodically runs an async check and emits whatever events it
returns. Preemption detection is built on it.

Example:
    async def health_check() -> list[FleetEvent]:
        return [Error("agent unreachable")] if unhealthy else []

    m = monitor(name="health", interval=30, check=health_check, emit=emit)
    m.start()
    ...
    await m.shutdown()
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from loguru import logger

from buildfleet.events import FleetEvent

log = logger.bind(component="monitor")


@dataclass
class Monitor:
    """Background asyncio task that periodically checks and emits events.

    The loop waits ``interval`` seconds, awaits ``check()`` and emits each
    returned event. A failing check is logged and the loop keeps going.

    Attributes:
        name: Monitor name (used for the task name and logging).
        interval: Seconds between checks.
        check: Async function returning the events to emit.
        emit: Function that dispatches an event.
    """

    name: str
    interval: float
    check: Callable[[], Awaitable[list[FleetEvent]]]
    emit: Callable[[FleetEvent], None]
    _task: asyncio.Task[None] | None = field(default=None, init=False, repr=False)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start the monitor in the running event loop.

        The task copies the current context, so events reach the callback
        that is active when start() is called.
        """
        if self.running:
            log.warning("Monitor {name} already running", name=self.name)
            return

        self._task = asyncio.get_running_loop().create_task(
            self._loop(), name=f"monitor-{self.name}",
        )
        log.debug("Monitor {name} started (interval={interval}s)", name=self.name, interval=self.interval)

    async def shutdown(self) -> None:
        """Cancel the monitor and wait for it to finish. Never raises."""
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        except Exception as e:
            log.warning("Monitor {name} ended with an error: {err}", name=self.name, err=e)
        self._task = None
        log.debug("Monitor {name} stopped", name=self.name)

    async def tick(self) -> None:
        """Run one check and emit its events.

        A failing check or a failing emit is logged; the remaining events
        of the pass are still emitted.
        """
        try:
            events = await self.check()
        except Exception as e:
            log.warning("Monitor {name} check failed: {err}", name=self.name, err=e)
            return
        for event in events:
            try:
                self.emit(event)
            except Exception as e:
                log.warning(
                    "Monitor {name} failed to emit {event}: {err}",
                    name=self.name, event=type(event).__name__, err=e,
                )

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            await self.tick()


def monitor(
    *,
    name: str,
    interval: float,
    check: Callable[[], Awaitable[list[FleetEvent]]],
    emit: Callable[[FleetEvent], None],
) -> Monitor:
    """Create a monitor (not yet started)."""
    return Monitor(name=name, interval=interval, check=check, emit=emit)


__all__ = ["Monitor", "monitor"]
