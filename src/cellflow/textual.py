"""Textual integration for cellflow. Opt-in, requires textual.

Store subscribers and cell events fire wherever the engine happens to be
running. The bindings here make them safe to point at widgets: effects are
skipped while the app is not running or is paused, NoMatches from widget
queries is swallowed, and calls from other threads go through
app.call_from_thread.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Any, Callable

from textual.css.query import NoMatches

from cellflow.scheduler import CellEvent
from cellflow.store import Store

# Keyed by id(app) so several apps can coexist in tests.
_paused_apps: set[int] = set()


@contextmanager
def pause(app):
    """Suspend bound effects, e.g. while widgets are being replaced."""
    key = id(app)
    _paused_apps.add(key)
    try:
        yield
    finally:
        _paused_apps.discard(key)


def is_safe(app) -> bool:
    """Is the widget tree in a queryable state?"""
    return app.is_running and id(app) not in _paused_apps


def _guard(app, effect: Callable[[Any], None]) -> Callable[[Any], None]:
    owner = threading.get_ident()

    def _safe(value: Any) -> None:
        try:
            effect(value)
        except NoMatches:
            pass

    def _guarded(value: Any) -> None:
        if not is_safe(app):
            return
        if threading.get_ident() != owner:
            app.call_from_thread(_safe, value)
        else:
            _safe(value)

    return _guarded


def bind(app, store: Store, name: str, effect: Callable[[Any], None], *, fire_immediately: bool = False):
    """Run effect(value) on every committed write to name. Returns an unsubscribe."""
    guarded = _guard(app, effect)
    unsubscribe = store.subscribe(name, guarded)
    if fire_immediately and store.has(name):
        guarded(store.get(name))
    return unsubscribe


def bind_events(app, engine, effect: Callable[[CellEvent], None]):
    """Run effect(event) for every cell status change. Returns a disposer."""
    return engine.events.subscribe(_guard(app, effect))
