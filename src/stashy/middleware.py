"""Middleware composition — wrap an initializer, get an initializer back.

A middleware is ``(initializer) -> initializer``. The returned initializer
receives (set_state, get_state, api) from the layer outside it, may wrap
set_state before handing it inward, may replace ``api.set_state`` /
``api.subscribe``, and may attach capabilities with ``api.extend()``.

compose(a, b, c)(init) == a(b(c(init))): the first middleware is the
outermost layer.
"""

from __future__ import annotations

import functools
from typing import Any, Callable, TypeVar

from stashy.store import Initializer, StoreApi

T = TypeVar("T")

Middleware = Callable[[Initializer], Initializer]
SetState = Callable[..., None]


def compose(*middlewares: Middleware) -> Middleware:
    """Combine middlewares into one, applied right-to-left."""

    def _apply(initializer: Initializer) -> Initializer:
        return functools.reduce(lambda inner, mw: mw(inner), reversed(middlewares), initializer)

    return _apply


def wrap_set_state(
    set_state: SetState,
    get_state: Callable[[], T],
    after: Callable[[T, T], None],
) -> SetState:
    """Return a set_state that calls after(state, previous) on every accepted mutation."""

    @functools.wraps(set_state)
    def _set_state(partial: Any, replace: bool = False) -> None:
        previous = get_state()
        set_state(partial, replace)
        state = get_state()
        if state is not previous:
            after(state, previous)

    return _set_state


def tap(effect: Callable[[T, T], None]) -> Middleware:
    """Middleware that runs effect(state, previous) after each accepted mutation.

    Covers both the set_state handed to inner layers and ``api.set_state``.

    Usage:
        seen = []
        store = create_store(tap(lambda s, prev: seen.append(s))(initializer))
    """

    def _middleware(initializer: Initializer) -> Initializer:
        def _initializer(set_state: SetState, get_state: Callable[[], T], api: StoreApi[T]) -> T:
            api.set_state = wrap_set_state(api.set_state, get_state, effect)
            return initializer(wrap_set_state(set_state, get_state, effect), get_state, api)

        return _initializer

    return _middleware
