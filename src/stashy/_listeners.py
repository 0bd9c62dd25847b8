"""Listener registry — ordered set of change callbacks.

Keyed by function identity; a dict keeps insertion order so notification
order is deterministic. Notification walks a copy, so listeners may
subscribe or unsubscribe while it runs.
"""

from __future__ import annotations

from typing import Callable

Disposer = Callable[[], None]


class ListenerRegistry:
    """Ordered set of callbacks with idempotent unsubscribe."""

    __slots__ = ("_listeners",)

    def __init__(self) -> None:
        self._listeners: dict[Callable[..., None], None] = {}

    def subscribe(self, listener: Callable[..., None]) -> Disposer:
        """Register a listener. Returns a function that removes it."""
        self._listeners[listener] = None

        def _unsubscribe() -> None:
            self._listeners.pop(listener, None)  # already removed is fine

        return _unsubscribe

    def notify(self, *args) -> None:
        """Call every registered listener with args.

        Listeners added during notification wait for the next one; listeners
        removed during notification are skipped. An exception from a listener
        propagates and the remaining listeners are not called.
        """
        for listener in list(self._listeners):
            if listener in self._listeners:
                listener(*args)

    def clear(self) -> None:
        self._listeners.clear()

    def __len__(self) -> int:
        return len(self._listeners)

    def __contains__(self, listener: object) -> bool:
        return listener in self._listeners
