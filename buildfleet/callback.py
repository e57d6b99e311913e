"""Event dispatch for the node lifecycle.

A single callback is active per context. The cloud, its launch tasks and
its preemption monitor all copy the context they start in, so a callback
installed around ``async with cloud`` sees every event the cloud emits.

A callback may answer an event with derived events. Those are dispatched
after the callback returns, breadth-first.

Example:
    from buildfleet.callback import use_callback

    def on_event(event):
        match event:
            case NodePreempted(name=name, reason=reason):
                print(f"{name} preempted: {reason}")

    with use_callback(on_event):
        async with cloud:
            ...
"""

from __future__ import annotations

from collections import deque
from collections.abc import Callable, Iterable, Iterator, Sequence
from contextlib import contextmanager
from contextvars import ContextVar
from typing import TYPE_CHECKING

from loguru import logger

if TYPE_CHECKING:
    from buildfleet.events import FleetEvent

type CallbackResult = FleetEvent | Sequence[FleetEvent] | None
type Callback = Callable[[FleetEvent], CallbackResult]

log = logger.bind(component="callback")

_active: ContextVar[Callback | None] = ContextVar("buildfleet_callback", default=None)


def _derived(result: CallbackResult) -> Iterable[FleetEvent]:
    match result:
        case None:
            return ()
        case list() | tuple():
            return result
        case _:
            return (result,)  # type: ignore[return-value]


def emit(event: FleetEvent) -> None:
    """Dispatch ``event`` to the callback active in this context."""
    cb = _active.get()
    if cb is None:
        return

    pending: deque[FleetEvent] = deque([event])
    while pending:
        pending.extend(_derived(cb(pending.popleft())))


def emit_safely(event: FleetEvent) -> None:
    """Like ``emit``, but a failing callback is logged instead of raised.

    For background tasks, where no caller is left to handle the error.
    """
    try:
        emit(event)
    except Exception as e:
        log.warning(
            "Callback failed on {event}: {err}", event=type(event).__name__, err=e,
        )


def compose(*callbacks: Callback) -> Callback:
    """Feed every event to each callback in turn, pooling derived events."""
    if len(callbacks) == 1:
        return callbacks[0]

    def fan_out(event: FleetEvent) -> list[FleetEvent]:
        return [d for cb in callbacks for d in _derived(cb(event))]

    return fan_out


@contextmanager
def use_callback(cb: Callback) -> Iterator[None]:
    """Make ``cb`` the active callback inside the block."""
    token = _active.set(cb)
    try:
        yield
    finally:
        _active.reset(token)


@contextmanager
def recording() -> Iterator[list[FleetEvent]]:
    """Collect emitted events, still passing them to the outer callback.

        with recording() as events:
            async with cloud:
                ...
        assert any(isinstance(e, NodePreempted) for e in events)
    """
    events: list[FleetEvent] = []
    outer = _active.get()
    with use_callback(compose(events.append, outer) if outer else events.append):
        yield events


def only(*event_types: type) -> Callable[[Callback], Callback]:
    """Restrict a callback to the given event types."""

    def decorator(cb: Callback) -> Callback:
        def filtered(event: FleetEvent) -> CallbackResult:
            return cb(event) if isinstance(event, event_types) else None

        return filtered

    return decorator


__all__ = [
    "Callback",
    "CallbackResult",
    "compose",
    "emit",
    "emit_safely",
    "only",
    "recording",
    "use_callback",
]
