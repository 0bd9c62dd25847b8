"""Store — a single mutable snapshot with subscription-based notification.

A store is built from an initializer ``(set_state, get_state, api) -> state``.
The initializer may close over set_state to define actions next to data.
Middlewares wrap the initializer before construction (see stashy.middleware)
and may replace set_state/subscribe on the handle or attach capabilities
through extend().

Construction is two-phase: the initializer runs first, then callbacks
registered with defer() run once the initial snapshot is in place.
"""

from __future__ import annotations

from typing import Any, Callable, Generic, TypeVar, overload

from stashy._cell import PartialState, StateCell
from stashy._listeners import Disposer, ListenerRegistry
from stashy.exceptions import MiddlewareError

T = TypeVar("T")


class StoreApi(Generic[T]):
    """Handle exposing set_state, get_state, get_initial_state and subscribe.

    The four operations are instance attributes so middlewares can wrap them.
    Capabilities attached by middlewares show up as plain attributes
    (``store.persist``) and are listed in ``capabilities``.
    """

    def __init__(self) -> None:
        self._cell: StateCell[T] = StateCell()
        self._listeners = ListenerRegistry()
        self._deferred: list[Callable[[], Any]] = []
        self._constructed = False
        self.capabilities: dict[str, Any] = {}

        self.set_state: Callable[..., None] = self._set_state
        self.get_state: Callable[[], T] = self._cell.get
        self.get_initial_state: Callable[[], T] = self._cell.get_initial
        self.subscribe: Callable[..., Disposer] = self._listeners.subscribe

    def _set_state(self, partial: PartialState, replace: bool = False) -> None:
        changed = self._cell.replace(partial, replace)
        if changed is not None:
            self._listeners.notify(*changed)

    def extend(self, **capabilities: Any) -> None:
        """Attach named capabilities to the handle.

        Raises MiddlewareError if a name is already taken.
        """
        for name, capability in capabilities.items():
            if name.startswith("_") or hasattr(self, name):
                raise MiddlewareError(f"store already has an attribute named {name!r}")
            setattr(self, name, capability)
            self.capabilities[name] = capability

    def defer(self, callback: Callable[[], Any]) -> None:
        """Run callback once construction has finished.

        Called after construction, runs callback immediately.
        """
        if self._constructed:
            callback()
        else:
            self._deferred.append(callback)

    def _construct(self, initializer: Callable[..., T]) -> None:
        self._cell.init(initializer(self.set_state, self.get_state, self))
        self._constructed = True
        deferred, self._deferred = self._deferred, []
        for callback in deferred:
            callback()

    def __repr__(self) -> str:
        extra = "".join(f", {name}" for name in self.capabilities)
        return f"StoreApi({self._cell.get()!r}{extra})"


Initializer = Callable[[Callable[..., None], Callable[[], T], StoreApi[T]], T]


@overload
def create_store(initializer: None = None) -> Callable[[Initializer], StoreApi]: ...


@overload
def create_store(initializer: Initializer) -> StoreApi: ...


def create_store(initializer=None):
    """Build a store from an initializer.

    Called without an initializer, returns create_store itself so it can be
    applied later.

    Usage:
        counter = create_store(lambda set, get, api: {
            "count": 0,
            "inc": lambda: set(lambda s: {"count": s["count"] + 1}),
        })
        counter.get_state()["inc"]()
        counter.get_state()["count"]  # 1
    """
    if initializer is None:
        return create_store
    api: StoreApi = StoreApi()
    api._construct(initializer)
    return api
