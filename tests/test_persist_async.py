"""Tests for the persistence middleware with asynchronous storage."""

from __future__ import annotations

import asyncio
import json
import time

import pytest

from stashy import (
    HydrationStatus,
    MemoryStorage,
    StorageError,
    ThreadedStorage,
    create_json_storage,
    create_store,
    persist,
)


def _counter(set, get, api):
    return {"count": 0, "other": "x"}


def _envelope(count, version=1):
    return json.dumps({"state": {"count": count}, "version": version})


class _ManualStorage:
    """Async raw storage whose reads resolve only when the test says so."""

    def __init__(self) -> None:
        self.reads: list[asyncio.Future] = []
        self.data: dict[str, str] = {}

    def get_item(self, name):
        future = asyncio.get_running_loop().create_future()
        self.reads.append(future)
        return future

    async def set_item(self, name, value):
        self.data[name] = value

    async def remove_item(self, name):
        self.data.pop(name, None)


def _finish_log(log):
    def init(set, get, api):
        api.persist.on_finish_hydration(lambda state, error: log.append((state, error)))
        return _counter(set, get, api)

    return init


@pytest.mark.asyncio
async def test_hydrates_from_threaded_storage():
    raw = MemoryStorage({"counter": _envelope(5)})
    finished = asyncio.Event()

    def init(set, get, api):
        api.persist.on_finish_hydration(lambda state, error: finished.set())
        return _counter(set, get, api)

    store = create_store(persist(
        init, name="counter", storage=create_json_storage(lambda: ThreadedStorage(raw)), version=1,
    ))
    assert store.get_state()["count"] == 0
    assert store.persist.hydration_status() is HydrationStatus.IN_PROGRESS
    assert not store.persist.has_hydrated()

    await asyncio.wait_for(finished.wait(), timeout=5)
    assert store.get_state()["count"] == 5
    assert store.persist.has_hydrated()


@pytest.mark.asyncio
async def test_initial_attempt_completes_on_its_own():
    storage = _ManualStorage()
    log = []
    store = create_store(persist(_finish_log(log), name="counter", storage=create_json_storage(lambda: storage), version=1))

    storage.reads[0].set_result(_envelope(5))
    await asyncio.sleep(0)
    await asyncio.sleep(0)
    await asyncio.sleep(0)

    assert store.get_state()["count"] == 5
    assert log == [(store.get_state(), None)]


@pytest.mark.asyncio
async def test_second_rehydrate_wins_when_first_resolves_late():
    storage = _ManualStorage()
    log = []
    store = create_store(persist(
        _finish_log(log), name="counter", storage=create_json_storage(lambda: storage), version=1, skip_hydration=True,
    ))

    first = store.persist.rehydrate()
    second = store.persist.rehydrate()
    storage.reads[1].set_result(_envelope(2))
    await second
    storage.reads[0].set_result(_envelope(1))
    await first

    assert store.get_state()["count"] == 2
    assert len(log) == 1
    assert log[0][0]["count"] == 2


@pytest.mark.asyncio
async def test_second_rehydrate_wins_when_first_resolves_early():
    storage = _ManualStorage()
    log = []
    store = create_store(persist(
        _finish_log(log), name="counter", storage=create_json_storage(lambda: storage), version=1, skip_hydration=True,
    ))

    first = store.persist.rehydrate()
    second = store.persist.rehydrate()
    storage.reads[0].set_result(_envelope(1))
    await first
    assert store.get_state()["count"] == 0
    assert store.persist.hydration_status() is HydrationStatus.IN_PROGRESS

    storage.reads[1].set_result(_envelope(2))
    await second
    assert store.get_state()["count"] == 2
    assert [state["count"] for state, _ in log] == [2]


@pytest.mark.asyncio
async def test_stale_failure_is_discarded():
    storage = _ManualStorage()
    log = []
    store = create_store(persist(
        _finish_log(log), name="counter", storage=create_json_storage(lambda: storage), version=1, skip_hydration=True,
    ))

    first = store.persist.rehydrate()
    second = store.persist.rehydrate()
    storage.reads[0].set_exception(OSError("late failure"))
    storage.reads[1].set_result(_envelope(3))
    await first
    await second

    assert store.persist.hydration_status() is HydrationStatus.SUCCEEDED
    assert [error for _, error in log] == [None]


@pytest.mark.asyncio
async def test_mutation_during_hydration_is_merged_under_stored_fields():
    storage = _ManualStorage()
    store = create_store(persist(
        _counter, name="counter", storage=create_json_storage(lambda: storage), version=1, skip_hydration=True,
    ))
    pending = store.persist.rehydrate()

    store.set_state({"count": 100, "other": "changed"})
    storage.reads[0].set_result(_envelope(5))
    await pending

    # Stored fields win, fields the envelope lacks keep the in-flight change.
    assert store.get_state() == {"count": 5, "other": "changed"}


@pytest.mark.asyncio
async def test_merge_runs_against_state_at_resolution_time():
    storage = _ManualStorage()
    seen = []

    def merge(persisted, current):
        seen.append(dict(current))
        return {**persisted, **current}  # in-memory wins

    store = create_store(persist(
        _counter, name="counter", storage=create_json_storage(lambda: storage), version=1,
        skip_hydration=True, merge=merge,
    ))
    pending = store.persist.rehydrate()
    store.set_state({"count": 100})
    storage.reads[0].set_result(_envelope(5))
    await pending

    assert seen == [{"count": 100, "other": "x"}]
    assert store.get_state()["count"] == 100


@pytest.mark.asyncio
async def test_async_read_error_reported():
    storage = _ManualStorage()
    log = []
    store = create_store(persist(
        _finish_log(log), name="counter", storage=create_json_storage(lambda: storage), skip_hydration=True,
    ))
    pending = store.persist.rehydrate()
    storage.reads[0].set_exception(ConnectionError("backend down"))
    await pending

    assert store.persist.hydration_status() is HydrationStatus.FAILED
    assert isinstance(log[0][1], ConnectionError)
    assert store.get_state()["count"] == 0


@pytest.mark.asyncio
async def test_async_migrate():
    storage = _ManualStorage()

    async def migrate(state, version):
        await asyncio.sleep(0)
        return {"count": int(state["count"])}

    store = create_store(persist(
        _counter, name="counter", storage=create_json_storage(lambda: storage), version=1,
        skip_hydration=True, migrate=migrate,
    ))
    pending = store.persist.rehydrate()
    storage.reads[0].set_result(json.dumps({"state": {"count": "7"}, "version": 0}))
    await pending
    assert store.get_state()["count"] == 7


@pytest.mark.asyncio
async def test_async_writes_are_scheduled():
    storage = _ManualStorage()
    store = create_store(persist(
        _counter, name="counter", storage=create_json_storage(lambda: storage), version=1, skip_hydration=True,
    ))
    store.set_state({"count": 4})
    await asyncio.sleep(0)
    assert json.loads(storage.data["counter"]) == {"state": {"count": 4, "other": "x"}, "version": 1}


@pytest.mark.asyncio
async def test_async_write_error_hook():
    class Failing(_ManualStorage):
        async def set_item(self, name, value):
            raise OSError("quota exceeded")

    errors = []
    store = create_store(persist(
        _counter, name="counter", storage=create_json_storage(Failing),
        skip_hydration=True, on_write_error=errors.append,
    ))
    store.set_state({"count": 1})
    await asyncio.sleep(0)
    await asyncio.sleep(0)
    assert len(errors) == 1
    assert isinstance(errors[0], OSError)


@pytest.mark.asyncio
async def test_async_clear_storage():
    storage = _ManualStorage()
    storage.data["counter"] = _envelope(1)
    store = create_store(persist(
        _counter, name="counter", storage=create_json_storage(lambda: storage), skip_hydration=True,
    ))
    await store.persist.clear_storage()
    assert storage.data == {}


@pytest.mark.filterwarnings("ignore:coroutine .* was never awaited:RuntimeWarning")
def test_async_storage_without_loop_reports_error():
    class LoopFree:
        async def get_item(self, name):
            return None

        async def set_item(self, name, value):
            return None

        async def remove_item(self, name):
            return None

    log = []
    errors = []
    store = create_store(persist(
        _finish_log(log), name="counter", storage=create_json_storage(LoopFree), on_write_error=errors.append,
    ))
    assert store.persist.hydration_status() is HydrationStatus.FAILED
    assert isinstance(log[0][1], StorageError)

    store.set_state({"count": 1})
    assert isinstance(errors[0], StorageError)
    assert store.get_state()["count"] == 1


class _SlowFirstWrite(MemoryStorage):
    """Sync backend whose first write takes longer than the ones after it."""

    def __init__(self) -> None:
        super().__init__()
        self.writes = 0

    def set_item(self, name, value):
        self.writes += 1
        if self.writes == 1:
            time.sleep(0.2)
        super().set_item(name, value)


@pytest.mark.asyncio
async def test_slow_write_does_not_overwrite_later_state():
    raw = _SlowFirstWrite()
    store = create_store(persist(
        _counter, name="c", storage=create_json_storage(lambda: ThreadedStorage(raw)), skip_hydration=True,
    ))
    store.set_state({"count": 1})
    store.set_state({"count": 2})
    await asyncio.sleep(0.5)

    assert json.loads(raw.data["c"])["state"]["count"] == 2
    assert raw.writes == 2


@pytest.mark.asyncio
async def test_writes_wait_for_inflight_hydration_read():
    storage = _ManualStorage()
    store = create_store(persist(
        _counter, name="counter", storage=create_json_storage(lambda: storage), version=1, skip_hydration=True,
    ))
    pending = store.persist.rehydrate()
    store.set_state({"count": 100, "other": "changed"})
    await asyncio.sleep(0)
    assert storage.data == {}

    storage.reads[0].set_result(_envelope(5))
    await pending
    await asyncio.sleep(0)
    await asyncio.sleep(0)
    assert json.loads(storage.data["counter"]) == {"state": {"count": 5, "other": "changed"}, "version": 1}


@pytest.mark.asyncio
@pytest.mark.parametrize("started", [False, True])
async def test_cancelled_hydration_fails_attempt(started):
    storage = _ManualStorage()
    log = []
    store = create_store(persist(
        _finish_log(log), name="counter", storage=create_json_storage(lambda: storage), version=1, skip_hydration=True,
    ))
    pending = store.persist.rehydrate()
    if started:
        await asyncio.sleep(0)
    pending.cancel()
    with pytest.raises(asyncio.CancelledError):
        await pending

    assert store.persist.hydration_status() is HydrationStatus.FAILED
    assert isinstance(log[0][1], asyncio.CancelledError)

    # Writes are no longer held back by the cancelled read.
    store.set_state({"count": 3})
    await asyncio.sleep(0)
    await asyncio.sleep(0)
    assert json.loads(storage.data["counter"])["state"]["count"] == 3


@pytest.mark.asyncio
async def test_set_options_during_attempt_applies_to_next_attempt():
    storage = _ManualStorage()
    log = []
    store = create_store(persist(
        _finish_log(log), name="counter", storage=create_json_storage(lambda: storage), version=1, skip_hydration=True,
    ))
    pending = store.persist.rehydrate()
    store.persist.set_options(version=2)
    storage.reads[0].set_result(_envelope(5, version=1))
    await pending

    assert store.persist.hydration_status() is HydrationStatus.SUCCEEDED
    assert store.get_state()["count"] == 5
    assert log[0][1] is None


@pytest.mark.asyncio
async def test_running_tasks_are_referenced_until_done():
    storage = _ManualStorage()
    store = create_store(persist(_counter, name="counter", storage=create_json_storage(lambda: storage), version=1))
    [hydration] = store.persist._tasks
    assert not hydration.done()

    storage.reads[0].set_result(_envelope(5))
    await hydration
    # The hydration commit is written back as its own task.
    assert len(store.persist._tasks) == 1
    await asyncio.sleep(0)
    await asyncio.sleep(0)
    assert store.persist._tasks == set()
    assert json.loads(storage.data["counter"])["state"]["count"] == 5
