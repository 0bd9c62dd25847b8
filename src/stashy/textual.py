"""Textual integration for stashy. Opt-in — requires textual.

Binds a slice of a store to widget updates. Only the read-only surface of a
store is used (get_state, get_initial_state, subscribe); rendering never
writes state.

Guard + NoMatches + thread-marshal are enforced here, not at callsites.
_paused_apps has a single owner (this module): id present <-> inside pause().
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Any, Callable

from textual.css.query import NoMatches

# Module-owned pause state — keyed by id(app) so multiple apps work in tests.
_paused_apps: set[int] = set()


@contextmanager
def pause(app):
    """Suspend bound effects during widget replacement."""
    key = id(app)
    _paused_apps.add(key)
    try:
        yield
    finally:
        _paused_apps.discard(key)


def is_safe(app) -> bool:
    """Is the widget tree in a queryable state?"""
    return app.is_running and id(app) not in _paused_apps


def _identity(state):
    return state


def select(store, selector: Callable[[Any], Any] = _identity, *, initial: bool = False) -> Any:
    """Read a slice of the store's current (or initial) state."""
    return selector(store.get_initial_state() if initial else store.get_state())


def bind(
    app,
    store,
    selector: Callable[[Any], Any],
    effect: Callable[[Any], None],
    *,
    equality: Callable[[Any, Any], bool] | None = None,
    fire_immediately: bool = True,
) -> Callable[[], None]:
    """Call effect(slice) whenever selector(state) changes. Returns unsubscribe.

    Skips effects while the app is paused or not running, swallows NoMatches
    from widget queries, and marshals cross-thread calls via call_from_thread.

    Usage:
        class CounterApp(App):
            def on_mount(self):
                self._unbind = bind(
                    self, counter, lambda s: s["count"],
                    lambda n: self.query_one("#count", Label).update(str(n)),
                )
    """
    _main = threading.get_ident()
    equal = equality or (lambda a, b: a is b or a == b)
    current = [select(store, selector)]

    def _safe(value):
        try:
            effect(value)
        except NoMatches:
            pass

    def _guarded(value):
        if not is_safe(app):
            return
        if threading.get_ident() != _main:
            app.call_from_thread(_safe, value)
        else:
            _safe(value)

    def _on_change(state, _previous):
        selected = selector(state)
        if equal(current[0], selected):
            return
        current[0] = selected
        _guarded(selected)

    unsubscribe = store.subscribe(_on_change)
    if fire_immediately:
        _guarded(current[0])
    return unsubscribe
