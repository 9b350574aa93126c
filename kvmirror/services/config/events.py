"""
Change Events

PutEvent / DeleteEvent describe one key changing state between two
snapshots. Dispatchers receive them one at a time; delivery is
synchronous from the watch loop's point of view.
"""

import inspect
from dataclasses import dataclass
from typing import Any, Callable, Protocol, Union, runtime_checkable


@dataclass(frozen=True)
class PutEvent:
    """Key was added or its value changed"""
    key: str
    value: str


@dataclass(frozen=True)
class DeleteEvent:
    """Key was removed"""
    key: str


ChangeEvent = Union[PutEvent, DeleteEvent]


@runtime_checkable
class EventDispatcher(Protocol):
    """Anything that accepts change events. May return an awaitable."""

    def dispatch(self, event: ChangeEvent) -> Any:
        ...


async def dispatch_event(dispatcher: EventDispatcher, event: ChangeEvent) -> None:
    """Deliver one event, awaiting the dispatcher if it is async."""
    result = dispatcher.dispatch(event)
    if inspect.isawaitable(result):
        await result


class ListenerDispatcher:
    """
    Minimal fan-out dispatcher.

    Callbacks run in registration order; async callbacks are awaited
    before the next one runs.
    """

    def __init__(self):
        self._listeners: list[tuple[type | None, Callable[[ChangeEvent], Any]]] = []

    def subscribe(
        self,
        callback: Callable[[ChangeEvent], Any],
        event_type: type | None = None,
    ) -> None:
        """Register callback for every event, or only for event_type."""
        self._listeners.append((event_type, callback))

    def unsubscribe(self, callback: Callable[[ChangeEvent], Any]) -> None:
        self._listeners = [(t, cb) for t, cb in self._listeners if cb != callback]

    async def dispatch(self, event: ChangeEvent) -> None:
        for event_type, callback in list(self._listeners):
            if event_type is not None and not isinstance(event, event_type):
                continue
            result = callback(event)
            if inspect.isawaitable(result):
                await result
