"""Stashy: minimal reactive state container with middleware and persistence."""

from importlib.metadata import version as _version

__version__ = _version("stashy")

from stashy.store import StoreApi, create_store
from stashy.middleware import compose, tap
from stashy.selector import subscribe_with_selector
from stashy.log import logged
from stashy.storage import (
    EnvelopeStorage,
    FileStorage,
    MemoryStorage,
    PersistedEnvelope,
    ThreadedStorage,
    create_json_storage,
)
from stashy.persist import HydrationStatus, PersistApi, PersistOptions, default_merge, persist
from stashy.exceptions import (
    EnvelopeDecodeError,
    HydrationError,
    MiddlewareError,
    MigrationError,
    StashyError,
    StorageError,
)
# textual NOT auto-imported — opt-in only

__all__ = [
    "StoreApi",
    "create_store",
    "compose",
    "tap",
    "subscribe_with_selector",
    "logged",
    "EnvelopeStorage",
    "FileStorage",
    "MemoryStorage",
    "PersistedEnvelope",
    "ThreadedStorage",
    "create_json_storage",
    "HydrationStatus",
    "PersistApi",
    "PersistOptions",
    "default_merge",
    "persist",
    "StashyError",
    "MiddlewareError",
    "StorageError",
    "EnvelopeDecodeError",
    "HydrationError",
    "MigrationError",
]
