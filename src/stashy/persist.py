"""Persistence middleware — keep a store in sync with durable storage.

persist() wraps an initializer so that:
- once the store is constructed, the stored envelope is loaded, migrated
  if its version differs, merged into the current state and committed;
- every later accepted mutation writes the projected state back.

Storage may be sync or async; both go through the same chain in
stashy._deferred. With sync storage hydration finishes before create_store
returns. With async storage it runs as a task on the running loop.

Attempts are numbered. rehydrate() during an in-flight attempt supersedes
it: the older attempt, when it resolves, is dropped without merging and
without firing finish callbacks.

Hydration failures (read, decode, migrate, merge) never raise out of the
store; they end the attempt as FAILED and reach the finish callbacks.
Write failures go to on_write_error, or are logged and dropped.
"""

from __future__ import annotations

import asyncio
import dataclasses
import enum
import functools
import inspect
import logging
from collections.abc import Mapping
from typing import Any, Awaitable, Callable, Generic, TypeVar

from stashy._deferred import Resolved, spawn, then
from stashy._listeners import Disposer, ListenerRegistry
from stashy.exceptions import MigrationError, StorageError
from stashy.middleware import SetState, wrap_set_state
from stashy.storage import PersistedEnvelope, StateStorage
from stashy.store import Initializer, StoreApi

logger = logging.getLogger("stashy.persist")

T = TypeVar("T")

# Marks "nothing was stored under this key" as it flows through the chain.
_ABSENT = object()


class HydrationStatus(enum.Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


def _identity(state: Any) -> Any:
    return state


def default_merge(persisted: Any, current: Any) -> Any:
    """Persisted fields win; fields it does not carry keep their current value."""
    if isinstance(persisted, Mapping) and isinstance(current, Mapping):
        return {**current, **persisted}
    if persisted is None:
        return current
    return persisted


@dataclasses.dataclass(frozen=True)
class PersistOptions:
    """Persistence configuration.

    Parameters
    ----------
    name : str
        Storage key. Unique per store.
    storage : StateStorage or None
        Envelope storage. None means no backend: nothing is loaded or written.
    partialize : callable
        Projection from full state to the part that gets persisted.
    version : int
        Version written with every envelope.
    migrate : callable or None
        ``migrate(persisted_state, persisted_version) -> state`` (or an
        awaitable of it), called when the stored version differs.
    merge : callable
        ``merge(persisted_state, current_state) -> state``. The result
        replaces the current state.
    skip_hydration : bool
        Do not hydrate on construction; call ``store.persist.rehydrate()``.
    on_rehydrate_storage : callable or None
        Called with the pre-hydration state when an attempt starts. May
        return ``callback(state, error)`` to run when that attempt finishes.
    on_write_error : callable or None
        Receives exceptions from writing state back. Without it they are
        logged at DEBUG and dropped.
    strict_version : bool
        With no migrate function, a version mismatch fails the attempt
        (True) or the stored state is used as-is (False).
    default_version : int
        Version assumed for envelopes that carry none.
    """

    name: str
    storage: StateStorage | None = None
    partialize: Callable[[Any], Any] = _identity
    version: int = 0
    migrate: Callable[[Any, int], Any] | None = None
    merge: Callable[[Any, Any], Any] = default_merge
    skip_hydration: bool = False
    on_rehydrate_storage: Callable[[Any], Callable[[Any, BaseException | None], None] | None] | None = None
    on_write_error: Callable[[BaseException], None] | None = None
    strict_version: bool = True
    default_version: int = 0


class PersistApi(Generic[T]):
    """Attached to the store as ``store.persist``."""

    def __init__(self, options: PersistOptions, set_state: SetState, get_state: Callable[[], T]) -> None:
        self._options = options
        self._set_state = set_state
        self._get_state = get_state
        self._status = HydrationStatus.NOT_STARTED
        self._has_hydrated = False
        self._attempt = 0
        self._hydrate_listeners = ListenerRegistry()
        self._finish_listeners = ListenerRegistry()
        # Strong references to running hydration and write tasks.
        self._tasks: set[asyncio.Future] = set()
        # At most one async write in flight; later changes wait behind it.
        self._write_task: asyncio.Future | None = None
        self._write_again = False
        self._reads_in_flight = 0

    # --- Options ---

    def get_options(self) -> PersistOptions:
        return self._options

    def set_options(self, **changes: Any) -> None:
        """Replace option fields on the live configuration."""
        self._options = dataclasses.replace(self._options, **changes)

    # --- Storage ---

    def clear_storage(self) -> Awaitable[None]:
        """Delete the stored envelope. Await the result for async storage."""
        storage = self._options.storage
        if storage is None:
            return Resolved()
        result = storage.remove_item(self._options.name)
        return result if inspect.isawaitable(result) else Resolved()

    def _track(self, task: asyncio.Future) -> asyncio.Future:
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def write(self) -> None:
        """Write the projected current state to storage (best effort).

        While an async write or an async hydration read is in flight, the
        write is postponed; once that finishes, the state current at that
        moment is written, so storage never ends on an older state.
        """
        options = self._options
        if options.storage is None:
            return
        if self._write_task is not None or self._reads_in_flight:
            self._write_again = True
            return
        self._write_again = False
        try:
            envelope = PersistedEnvelope(state=options.partialize(self._get_state()), version=options.version)
            result = options.storage.set_item(options.name, envelope)
        except Exception as exc:
            self._write_failed(exc)
            return
        if inspect.isawaitable(result):
            try:
                task = spawn(result)
            except RuntimeError as exc:
                error = StorageError("async storage needs a running event loop", key=options.name)
                error.__cause__ = exc
                self._write_failed(error)
                return
            self._write_task = self._track(task)
            task.add_done_callback(self._write_done)

    def _write_done(self, task: asyncio.Future) -> None:
        self._write_task = None
        if not task.cancelled() and task.exception() is not None:
            self._write_failed(task.exception())
        self._flush_write()

    def _flush_write(self) -> None:
        if self._write_again:
            self.write()

    def _write_failed(self, exc: BaseException) -> None:
        handler = self._options.on_write_error
        if handler is not None:
            handler(exc)
        else:
            logger.debug("Failed to persist %r", self._options.name, exc_info=exc)

    # --- Hydration ---

    def hydration_status(self) -> HydrationStatus:
        return self._status

    def has_hydrated(self) -> bool:
        return self._has_hydrated

    def on_hydrate(self, listener: Callable[[T], None]) -> Disposer:
        """listener(state) runs at the start of every hydration attempt."""
        return self._hydrate_listeners.subscribe(listener)

    def on_finish_hydration(self, listener: Callable[[T | None, BaseException | None], None]) -> Disposer:
        """listener(state, error) runs when an attempt completes; state is None on error."""
        return self._finish_listeners.subscribe(listener)

    def rehydrate(self) -> Awaitable[None]:
        """Start a hydration attempt, superseding any attempt in flight.

        The attempt runs with the options in effect now; set_options() while
        it is in flight applies to the next one. Returns a task for async
        storage, an already-resolved awaitable otherwise.
        """
        self._attempt += 1
        attempt = self._attempt
        self._status = HydrationStatus.IN_PROGRESS
        options = self._options
        post = None

        try:
            current = self._get_state()
            self._hydrate_listeners.notify(current)
            if options.on_rehydrate_storage is not None:
                post = options.on_rehydrate_storage(current)
            if options.storage is None:
                restored = _ABSENT
            else:
                restored = then(
                    options.storage.get_item(options.name),
                    lambda envelope: self._migrate(envelope, options),
                )
        except Exception as exc:
            self._fail(attempt, options, post, exc)
            return Resolved()

        if not inspect.isawaitable(restored):
            self._complete(attempt, options, post, restored)
            return Resolved()

        try:
            task = spawn(self._settle(attempt, options, post, restored))
        except RuntimeError as exc:
            if inspect.iscoroutine(restored):
                restored.close()
            error = StorageError("async storage needs a running event loop", key=options.name)
            error.__cause__ = exc
            self._fail(attempt, options, post, error)
            return Resolved()
        self._reads_in_flight += 1
        task.add_done_callback(functools.partial(self._settled, attempt, options, post, restored))
        return self._track(task)

    async def _settle(self, attempt: int, options: PersistOptions, post, pending: Awaitable[Any]) -> None:
        try:
            restored = await pending
        except Exception as exc:
            self._fail(attempt, options, post, exc)
        else:
            self._complete(attempt, options, post, restored)

    def _settled(self, attempt: int, options: PersistOptions, post, pending: Awaitable[Any], task: asyncio.Future) -> None:
        # Runs even when the task was cancelled before it started.
        self._reads_in_flight -= 1
        if task.cancelled():
            if inspect.iscoroutine(pending):
                pending.close()
            self._fail(attempt, options, post, asyncio.CancelledError())
        self._flush_write()

    def _migrate(self, envelope: PersistedEnvelope | None, options: PersistOptions) -> Any:
        """Resolve a loaded envelope to (state, migrated), or _ABSENT."""
        if envelope is None:
            return _ABSENT
        version = envelope.version if envelope.version is not None else options.default_version
        if version == options.version:
            return envelope.state, False
        if options.migrate is not None:
            return then(options.migrate(envelope.state, version), lambda state: (state, True))
        if options.strict_version:
            raise MigrationError(
                f"stored state for {options.name!r} has version {version}, expected {options.version}, "
                "and no migrate function is configured",
                persisted_version=version,
                current_version=options.version,
            )
        logger.warning(
            "Using stored state for %r as-is: version %d does not match %d",
            options.name, version, options.version,
        )
        return envelope.state, False

    def _stale(self, attempt: int, options: PersistOptions) -> bool:
        if attempt != self._attempt:
            logger.debug("Discarding superseded hydration attempt %d for %r", attempt, options.name)
            return True
        return False

    def _complete(self, attempt: int, options: PersistOptions, post, restored: Any) -> None:
        if self._stale(attempt, options):
            return
        if restored is not _ABSENT:
            state, migrated = restored
            try:
                self._set_state(options.merge(state, self._get_state()), True)
            except Exception as exc:
                self._fail(attempt, options, post, exc)
                return
            if migrated:
                logger.info("Migrated stored state for %r to version %d", options.name, options.version)
        self._finish(post, HydrationStatus.SUCCEEDED, self._get_state(), None)

    def _fail(self, attempt: int, options: PersistOptions, post, exc: BaseException) -> None:
        if self._stale(attempt, options):
            return
        logger.warning("Hydration of %r failed: %r", options.name, exc)
        self._finish(post, HydrationStatus.FAILED, None, exc)

    def _finish(self, post, status: HydrationStatus, state: Any, error: BaseException | None) -> None:
        self._status = status
        self._has_hydrated = True
        if post is not None:
            post(state, error)
        self._finish_listeners.notify(state, error)

    def __repr__(self) -> str:
        return f"PersistApi({self._options.name!r}, {self._status.value})"


def persist(initializer: Initializer, options: PersistOptions | None = None, **kwargs: Any) -> Initializer:
    """Middleware: load state from storage after construction, save it after every change.

    Options come as a PersistOptions or as keyword arguments (``name`` is
    required). Adds ``store.persist`` (a PersistApi).

    Usage:
        store = create_store(persist(
            lambda set, get, api: {"count": 0},
            name="counter",
            storage=create_json_storage(lambda: FileStorage("state")),
            version=1,
        ))
        store.persist.has_hydrated()  # True, file storage is sync
    """
    if options is None:
        options = PersistOptions(**kwargs)
    elif kwargs:
        options = dataclasses.replace(options, **kwargs)

    def _initializer(set_state: SetState, get_state: Callable[[], T], api: StoreApi[T]) -> T:
        if options.storage is None:
            logger.warning("No storage configured for %r; state will not be persisted", options.name)

        constructed = False

        def _after_change(_state: T, _previous: T) -> None:
            if constructed:
                persist_api.write()

        persisting_set = wrap_set_state(set_state, get_state, _after_change)
        persist_api: PersistApi[T] = PersistApi(options, persisting_set, get_state)
        api.set_state = wrap_set_state(api.set_state, get_state, _after_change)
        api.extend(persist=persist_api)

        def _start() -> None:
            nonlocal constructed
            constructed = True
            if not persist_api.get_options().skip_hydration:
                persist_api.rehydrate()

        api.defer(_start)
        return initializer(persisting_set, get_state, api)

    return _initializer
