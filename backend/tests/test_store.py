import base64

import pytest

from conftest import FakeClock
from fileconv.conversion.models import Category, TaskStateError, TaskStatus
from fileconv.conversion.store import TaskStore


@pytest.fixture
def store(clock):
    return TaskStore(retention=900, stale_after=3600, clock=clock)


def test_create_starts_pending_at_zero(store):
    record = store.create(Category.IMAGE, message="Queued")
    assert record.status is TaskStatus.PENDING
    assert record.progress == 0
    assert record.data_base64 is None
    assert store.get(record.id) is record
    assert record.id in store


def test_ids_are_unique(store):
    ids = {store.create(Category.DOC).id for _ in range(200)}
    assert len(ids) == 200


def test_progress_never_goes_down(store):
    record = store.create(Category.DOC)
    store.advance(record.id, 30, "Running")
    assert store.advance(record.id, 15).progress == 30
    assert store.get(record.id).message == "Running"
    assert store.advance(record.id, 250).progress == 100


def test_complete_sets_payload_and_freezes(store):
    record = store.create(Category.IMAGE)
    done = store.complete(record.id, b"webp-bytes", "image/webp", file_name="a.webp")
    assert done.status is TaskStatus.DONE
    assert done.progress == 100
    assert base64.b64decode(done.data_base64) == b"webp-bytes"
    assert done.mime == "image/webp"

    with pytest.raises(TaskStateError):
        store.advance(record.id, 50)
    with pytest.raises(TaskStateError):
        store.fail(record.id, "late failure")
    assert store.get(record.id) is done


def test_fail_keeps_progress_and_has_no_payload(store):
    record = store.create(Category.VECTOR)
    store.advance(record.id, 30)
    failed = store.fail(record.id, "ConvertFailed: boom")
    assert failed.status is TaskStatus.ERROR
    assert failed.progress == 30
    assert failed.data_base64 is None
    with pytest.raises(TaskStateError):
        store.complete(record.id, b"x", "image/png")


def test_unknown_id_raises_key_error(store):
    with pytest.raises(KeyError):
        store.advance("missing", 10)
    assert store.get("missing") is None


def test_eviction_of_terminal_and_stale_records(store, clock):
    done = store.create(Category.IMAGE)
    store.complete(done.id, b"x", "image/png")
    pending = store.create(Category.DOC)

    clock.advance(899)
    assert store.evict_expired() == 0
    clock.advance(1)
    assert store.evict_expired() == 1
    assert done.id not in store
    assert pending.id in store

    clock.advance(3600)
    assert store.evict_expired() == 1
    assert len(store) == 0


def test_create_sweeps_lazily():
    clock = FakeClock()
    store = TaskStore(retention=10, stale_after=100, clock=clock, sweep_interval=30)
    old = store.create(Category.IMAGE)
    store.fail(old.id, "nope")
    clock.advance(31)
    store.create(Category.IMAGE)
    assert old.id not in store


def test_stats(store):
    a = store.create(Category.IMAGE)
    b = store.create(Category.IMAGE)
    store.create(Category.IMAGE)
    store.complete(a.id, b"x", "image/png")
    store.fail(b.id, "bad")
    assert store.stats() == {"pending": 1, "done": 1, "error": 1}
