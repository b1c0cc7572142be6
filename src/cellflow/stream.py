"""Push-based event stream for cell status events.

The scheduler emits a CellEvent on every status change; UIs subscribe,
optionally narrowing the stream with map()/filter(). Each operator returns
a child stream and dispose() tears down the whole chain below it.
"""

from __future__ import annotations

import logging
from typing import Callable, Generic, TypeVar

T = TypeVar("T")
U = TypeVar("U")

Disposer = Callable[[], None]

logger = logging.getLogger("cellflow.stream")


class EventStream(Generic[T]):
    def __init__(self) -> None:
        self._subscribers: list[Callable[[T], None]] = []
        self._children: list[EventStream] = []
        self._disposed = False
        self._detach: Disposer | None = None

    @property
    def disposed(self) -> bool:
        return self._disposed

    def emit(self, value: T) -> None:
        """Deliver value to every subscriber, in subscription order.

        A failing subscriber is logged and does not stop the others.
        """
        if self._disposed:
            return
        for callback in list(self._subscribers):
            try:
                callback(value)
            except Exception:
                logger.exception("Event subscriber failed")

    def subscribe(self, callback: Callable[[T], None]) -> Disposer:
        self._subscribers.append(callback)

        def _unsubscribe() -> None:
            try:
                self._subscribers.remove(callback)
            except ValueError:
                pass  # already removed

        return _unsubscribe

    def map(self, fn: Callable[[T], U]) -> EventStream[U]:
        child: EventStream[U] = self._child()
        self.subscribe(lambda value: child.emit(fn(value)))
        return child

    def filter(self, predicate: Callable[[T], bool]) -> EventStream[T]:
        child: EventStream[T] = self._child()
        self.subscribe(lambda value: child.emit(value) if predicate(value) else None)
        return child

    def dispose(self) -> None:
        """Stop emitting and dispose every downstream stream."""
        self._disposed = True
        self._subscribers.clear()
        for child in list(self._children):
            child.dispose()
        self._children.clear()
        if self._detach is not None:
            self._detach()
            self._detach = None

    def _child(self) -> EventStream:
        child: EventStream = EventStream()
        self._children.append(child)

        def _detach() -> None:
            try:
                self._children.remove(child)
            except ValueError:
                pass

        child._detach = _detach
        return child

    def __len__(self) -> int:
        return len(self._subscribers)
