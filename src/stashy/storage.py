"""Storage — where persisted state lives between process runs.

Two levels:
- raw storage: text in, text out, keyed by name (MemoryStorage, FileStorage,
  ThreadedStorage, or anything matching RawStorage). Any method may return
  an awaitable instead of a value.
- envelope storage: turns raw text into a PersistedEnvelope and back.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Awaitable, Callable, Protocol, TypeVar, Union, runtime_checkable

from pydantic import BaseModel, ConfigDict, ValidationError

from stashy._deferred import then
from stashy.exceptions import EnvelopeDecodeError

logger = logging.getLogger("stashy.storage")

T = TypeVar("T")
MaybeAwaitable = Union[T, Awaitable[T]]


@runtime_checkable
class RawStorage(Protocol):
    """Minimal key/text backend. Sync or async, per method."""

    def get_item(self, name: str) -> MaybeAwaitable[str | None]:  # pragma: no cover - interface
        ...

    def set_item(self, name: str, value: str) -> MaybeAwaitable[None]:  # pragma: no cover - interface
        ...

    def remove_item(self, name: str) -> MaybeAwaitable[None]:  # pragma: no cover - interface
        ...


class PersistedEnvelope(BaseModel):
    """What gets written for one store: the projected state plus its version."""

    model_config = ConfigDict(extra="ignore")

    state: Any
    version: int | None = None


@runtime_checkable
class StateStorage(Protocol):
    """Envelope-level backend used by the persistence middleware."""

    def get_item(self, name: str) -> MaybeAwaitable[PersistedEnvelope | None]:  # pragma: no cover - interface
        ...

    def set_item(self, name: str, value: PersistedEnvelope) -> MaybeAwaitable[None]:  # pragma: no cover - interface
        ...

    def remove_item(self, name: str) -> MaybeAwaitable[None]:  # pragma: no cover - interface
        ...


# ─── Raw backends ────────────────────────────────────────────────────────────


class MemoryStorage:
    """Dict-backed raw storage. Lives as long as the instance does."""

    def __init__(self, data: dict[str, str] | None = None) -> None:
        self.data: dict[str, str] = dict(data) if data else {}

    def get_item(self, name: str) -> str | None:
        return self.data.get(name)

    def set_item(self, name: str, value: str) -> None:
        self.data[name] = value

    def remove_item(self, name: str) -> None:
        self.data.pop(name, None)

    def __repr__(self) -> str:
        return f"MemoryStorage({sorted(self.data)!r})"


class FileStorage:
    """One file per key under a directory.

    Writes go to a temp file in the same directory and are moved into place
    with os.replace, so a reader never sees a half-written value.
    """

    def __init__(self, directory: str | os.PathLike, suffix: str = ".json") -> None:
        self.directory = Path(directory)
        self.suffix = suffix

    def _path(self, name: str) -> Path:
        if not name or os.sep in name or (os.altsep and os.altsep in name) or name in (".", ".."):
            raise ValueError(f"invalid storage key: {name!r}")
        return self.directory / f"{name}{self.suffix}"

    def get_item(self, name: str) -> str | None:
        try:
            return self._path(name).read_text(encoding="utf-8")
        except FileNotFoundError:
            return None

    def set_item(self, name: str, value: str) -> None:
        path = self._path(name)
        self.directory.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=self.directory, prefix=f".{name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(value)
            os.replace(tmp, path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise

    def remove_item(self, name: str) -> None:
        self._path(name).unlink(missing_ok=True)

    def __repr__(self) -> str:
        return f"FileStorage({str(self.directory)!r})"


class ThreadedStorage:
    """Async view of a sync backend; each call runs in a worker thread."""

    def __init__(self, storage: RawStorage) -> None:
        self.storage = storage

    async def get_item(self, name: str) -> str | None:
        return await asyncio.to_thread(self.storage.get_item, name)

    async def set_item(self, name: str, value: str) -> None:
        await asyncio.to_thread(self.storage.set_item, name, value)

    async def remove_item(self, name: str) -> None:
        await asyncio.to_thread(self.storage.remove_item, name)

    def __repr__(self) -> str:
        return f"ThreadedStorage({self.storage!r})"


# ─── Envelope layer ──────────────────────────────────────────────────────────


class EnvelopeStorage:
    """Serializes PersistedEnvelope to text on top of a raw backend.

    dumps/loads default to json; pass others (e.g. with a custom ``default=``
    hook) to persist values json cannot handle.
    """

    def __init__(
        self,
        storage: RawStorage,
        *,
        dumps: Callable[[Any], str] = json.dumps,
        loads: Callable[[str], Any] = json.loads,
    ) -> None:
        self.storage = storage
        self._dumps = dumps
        self._loads = loads

    def _decode(self, name: str, text: str | None) -> PersistedEnvelope | None:
        if text is None:
            return None
        try:
            return PersistedEnvelope.model_validate(self._loads(text))
        except (ValueError, TypeError, ValidationError) as exc:
            raise EnvelopeDecodeError(f"cannot decode stored value for {name!r}: {exc}", key=name) from exc

    def get_item(self, name: str) -> MaybeAwaitable[PersistedEnvelope | None]:
        return then(self.storage.get_item(name), lambda text: self._decode(name, text))

    def set_item(self, name: str, value: PersistedEnvelope) -> MaybeAwaitable[None]:
        return self.storage.set_item(name, self._dumps(value.model_dump()))

    def remove_item(self, name: str) -> MaybeAwaitable[None]:
        return self.storage.remove_item(name)

    def __repr__(self) -> str:
        return f"EnvelopeStorage({self.storage!r})"


def create_json_storage(
    get_storage: Callable[[], RawStorage],
    *,
    dumps: Callable[[Any], str] = json.dumps,
    loads: Callable[[str], Any] = json.loads,
) -> EnvelopeStorage | None:
    """Build JSON envelope storage from a backend factory.

    Returns None, with a warning, if the factory raises: the backend is
    treated as unavailable and persistence turns into a no-op.

    Usage:
        storage = create_json_storage(lambda: FileStorage("/var/lib/myapp/state"))
    """
    try:
        storage = get_storage()
    except Exception:
        logger.warning("Storage backend unavailable; state will not be persisted", exc_info=True)
        return None
    return EnvelopeStorage(storage, dumps=dumps, loads=loads)
