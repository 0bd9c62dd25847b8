"""Selector subscriptions — listen to a slice of state instead of all of it.

subscribe_with_selector replaces ``api.subscribe`` with a version that takes
an optional selector. The listener then fires only when the selected value
changes, the same contract as reaction(data_fn, effect_fn) elsewhere.
"""

from __future__ import annotations

from typing import Any, Callable, TypeVar

from stashy._listeners import Disposer
from stashy.store import Initializer, StoreApi

T = TypeVar("T")
S = TypeVar("S")


def _same(a: Any, b: Any) -> bool:
    return a is b or a == b


def subscribe_with_selector(initializer: Initializer) -> Initializer:
    """Middleware: ``subscribe(listener, selector=None, *, equality=None, fire_immediately=False)``.

    Without a selector the listener gets (state, previous) on every accepted
    mutation. With one it gets (selected, previous_selected), only when
    equality(previous_selected, selected) is false.

    Usage:
        store = create_store(subscribe_with_selector(initializer))
        store.subscribe(
            lambda count, prev: print(prev, "->", count),
            lambda s: s["count"],
            fire_immediately=True,
        )
    """

    def _initializer(set_state, get_state: Callable[[], T], api: StoreApi[T]) -> T:
        base_subscribe = api.subscribe

        def subscribe(
            listener: Callable[[Any, Any], None],
            selector: Callable[[T], S] | None = None,
            *,
            equality: Callable[[S, S], bool] | None = None,
            fire_immediately: bool = False,
        ) -> Disposer:
            if selector is None:
                return base_subscribe(listener)

            equal = equality or _same
            current = [selector(get_state())]

            def _on_change(state: T, _previous: T) -> None:
                selected = selector(state)
                if not equal(current[0], selected):
                    previous_selected = current[0]
                    current[0] = selected
                    listener(selected, previous_selected)

            if fire_immediately:
                listener(current[0], current[0])
            return base_subscribe(_on_change)

        api.subscribe = subscribe
        return initializer(set_state, get_state, api)

    return _initializer
