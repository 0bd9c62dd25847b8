"""Exception hierarchy for stashy."""

from __future__ import annotations


class StashyError(Exception):
    """Base exception for all stashy errors."""


class MiddlewareError(StashyError):
    """A middleware tried to attach a capability the store cannot take."""


class StorageError(StashyError):
    """A storage backend failed to read, write or delete a key."""

    def __init__(self, message: str, *, key: str = "") -> None:
        self.key = key
        super().__init__(message)


class EnvelopeDecodeError(StorageError):
    """Stored text could not be parsed into a persisted envelope."""


class HydrationError(StashyError):
    """Restoring persisted state into a store failed."""


class MigrationError(HydrationError):
    """Persisted state has a version the store cannot adopt."""

    def __init__(
        self,
        message: str,
        *,
        persisted_version: int | None = None,
        current_version: int | None = None,
    ) -> None:
        self.persisted_version = persisted_version
        self.current_version = current_version
        super().__init__(message)
