"""State cell — the single authoritative snapshot of a store.

Holds the current snapshot plus the snapshot captured at construction.
Mapping candidates are shallow-merged into a fresh dict, so neither the
previous snapshot nor the initial one is ever mutated in place.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Callable, Generic, TypeVar, Union

T = TypeVar("T")

PartialState = Union[T, Mapping[str, Any], Callable[[T], Any]]


class StateCell(Generic[T]):
    """Current + initial snapshot with merge-on-set."""

    __slots__ = ("_state", "_initial")

    def __init__(self) -> None:
        self._state: T | None = None
        self._initial: T | None = None

    def init(self, value: T) -> None:
        """Seed both the current and the initial snapshot."""
        self._state = value
        self._initial = value

    def get(self) -> T:
        return self._state

    def get_initial(self) -> T:
        return self._initial

    def replace(self, partial: PartialState, replace: bool = False) -> tuple[T, T] | None:
        """Compute and store the next snapshot.

        Returns (next, previous), or None when the candidate is the current
        snapshot itself and nothing changed.
        """
        candidate = partial(self._state) if callable(partial) else partial
        if candidate is self._state:
            return None

        previous = self._state
        if replace or not isinstance(candidate, Mapping):
            self._state = candidate
        elif isinstance(previous, Mapping):
            self._state = {**previous, **candidate}
        else:
            self._state = dict(candidate)
        return self._state, previous

    def __repr__(self) -> str:
        return f"StateCell({self._state!r})"
