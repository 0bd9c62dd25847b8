"""Deferred values — one code path for sync and async storage.

then(value, fn) applies fn right away when value is a plain value, and
returns a coroutine that awaits it first when value is awaitable. A sync
chain therefore runs to completion inline; an async chain becomes a single
awaitable that the caller schedules.
"""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Coroutine
from typing import Any, Awaitable, Callable, Generic, TypeVar

T = TypeVar("T")
U = TypeVar("U")


def then(value: T | Awaitable[T], fn: Callable[[T], U]) -> U | Awaitable[U]:
    """Apply fn to value now, or once it resolves if it is awaitable."""
    if inspect.isawaitable(value):

        async def _later() -> U:
            result = fn(await value)
            if inspect.isawaitable(result):
                result = await result
            return result

        return _later()
    return fn(value)


class Resolved(Generic[T]):
    """An awaitable that is already done."""

    __slots__ = ("value",)

    def __init__(self, value: T = None) -> None:
        self.value = value

    def __await__(self):
        return self.value
        yield  # pragma: no cover - makes this a generator

    def done(self) -> bool:
        return True

    def result(self) -> T:
        return self.value

    def __repr__(self) -> str:
        return f"Resolved({self.value!r})"


def spawn(awaitable: Awaitable[Any]) -> asyncio.Future:
    """Schedule awaitable on the running loop.

    Raises RuntimeError when no loop is running; a coroutine is closed first
    so it does not warn about never being awaited.
    """
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        if isinstance(awaitable, Coroutine):
            awaitable.close()
        raise
    return asyncio.ensure_future(awaitable, loop=loop)
