import asyncio
from datetime import datetime
from unittest.mock import patch

import pytest
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from access_log import AccessLogBuffer, AccessLogStore, InsertManyResult
from db import make_engine, make_session_factory
from errors import PersistenceTransientFailure
from models import AccessLog
from schemas import AccessLogEntry


def make_entry(n: int) -> AccessLogEntry:
    return AccessLogEntry(
        timestamp=datetime(2024, 1, 1, 12, 0, n % 60),
        api_key="k" * 64,
        endpoint=f"/transactions/{n}",
        method="GET",
        status_code=200,
        query_time_ms=3,
        validation_time_ms=1,
        elapsed_time_ms=7,
        ip_address="10.0.0.1",
        user_agent="pytest",
        accessed_resources=[f"transaction:{n}"],
    )


class FakeStore:
    """
    Records every insert_many call. Optionally fails, blocks until released,
    or reports the entries at the `reject` positions as not written.
    """

    def __init__(self, fail: bool = False, block: bool = False, reject=()):
        self.fail = fail
        self.reject = set(reject)
        self.calls = []
        self.written = []
        self.started = asyncio.Event()
        self.release = asyncio.Event()
        if not block:
            self.release.set()

    async def insert_many(self, entries):
        self.calls.append(list(entries))
        self.started.set()
        await self.release.wait()
        if self.fail:
            raise PersistenceTransientFailure("store down")
        failed = tuple(i for i in range(len(entries)) if i in self.reject)
        self.written.extend(e for i, e in enumerate(entries) if i not in self.reject)
        return InsertManyResult(inserted=len(entries) - len(failed), failed_indices=failed)


# =========================
# Buffer
# =========================

@pytest.mark.asyncio
async def test_flush_success_empties_buffer():
    """Successful flush writes all K entries and empties pending"""
    store = FakeStore()
    buffer = AccessLogBuffer(store, max_buffer_size=100)
    entries = [make_entry(i) for i in range(5)]

    for entry in entries:
        buffer.enqueue(entry)
    await buffer.flush()

    assert buffer.pending == []
    assert store.written == entries
    assert not buffer.flush_in_flight


@pytest.mark.asyncio
async def test_flush_total_failure_keeps_entries():
    """Failed flush leaves exactly the same entries pending"""
    store = FakeStore(fail=True)
    buffer = AccessLogBuffer(store, max_buffer_size=100)
    entries = [make_entry(i) for i in range(5)]

    for entry in entries:
        buffer.enqueue(entry)
    await buffer.flush()

    assert buffer.pending == entries
    assert not buffer.flush_in_flight


@pytest.mark.asyncio
async def test_failed_entries_are_retried_on_next_flush():
    """At-least-once: entries kept by a failed flush go out with the next one"""
    store = FakeStore(fail=True)
    buffer = AccessLogBuffer(store, max_buffer_size=100)
    buffer.enqueue(make_entry(1))

    await buffer.flush()
    store.fail = False
    buffer.enqueue(make_entry(2))
    await buffer.flush()

    assert store.written == [make_entry(1), make_entry(2)]
    assert buffer.pending == []


@pytest.mark.asyncio
async def test_flush_keeps_entries_the_store_rejected():
    """Rows the store reports as failed stay pending and go out on the next flush"""
    store = FakeStore(reject={1})
    buffer = AccessLogBuffer(store, max_buffer_size=100)
    a, b, c = make_entry(1), make_entry(2), make_entry(3)
    for entry in (a, b, c):
        buffer.enqueue(entry)

    await buffer.flush()

    assert store.written == [a, c]
    assert buffer.pending == [b]

    store.reject = set()
    await buffer.flush()

    assert store.written == [a, c, b]
    assert buffer.pending == []


@pytest.mark.asyncio
async def test_rejected_entries_go_ahead_of_later_enqueues():
    store = FakeStore(block=True, reject={0})
    buffer = AccessLogBuffer(store, max_buffer_size=100)
    a, b, c = make_entry(1), make_entry(2), make_entry(3)

    buffer.enqueue(a)
    buffer.enqueue(b)
    flush_task = asyncio.create_task(buffer.flush())
    await store.started.wait()
    buffer.enqueue(c)

    store.release.set()
    await flush_task

    assert store.written == [b]
    assert buffer.pending == [a, c]


@pytest.mark.asyncio
async def test_flush_snapshot_isolation():
    """Entries enqueued during a flush are neither written nor removed by it"""
    store = FakeStore(block=True)
    buffer = AccessLogBuffer(store, max_buffer_size=100)
    a, b, c = make_entry(1), make_entry(2), make_entry(3)

    buffer.enqueue(a)
    buffer.enqueue(b)
    flush_task = asyncio.create_task(buffer.flush())
    await store.started.wait()

    assert buffer.flush_in_flight
    buffer.enqueue(c)

    # A second flush while one is in flight is a no-op
    await buffer.flush()
    assert len(store.calls) == 1

    store.release.set()
    await flush_task

    assert store.written == [a, b]
    assert buffer.pending == [c]


@pytest.mark.asyncio
async def test_empty_flush_is_noop():
    """Flushing an empty buffer never touches the store"""
    store = FakeStore()
    buffer = AccessLogBuffer(store)

    await buffer.flush()

    assert store.calls == []


@pytest.mark.asyncio
async def test_capacity_triggers_flush_without_timer():
    """Reaching max_buffer_size schedules a flush before any timer tick"""
    store = FakeStore()
    buffer = AccessLogBuffer(store, flush_interval=3600, max_buffer_size=3)

    for i in range(3):
        buffer.enqueue(make_entry(i))

    for _ in range(5):
        await asyncio.sleep(0)

    assert len(store.calls) == 1
    assert buffer.pending == []


@pytest.mark.asyncio
async def test_capacity_trigger_schedules_single_flush():
    """Enqueues past the threshold while a flush is scheduled do not pile up flushes"""
    store = FakeStore(block=True)
    buffer = AccessLogBuffer(store, flush_interval=3600, max_buffer_size=2)

    for i in range(6):
        buffer.enqueue(make_entry(i))
    await store.started.wait()
    buffer.enqueue(make_entry(6))

    store.release.set()
    for _ in range(5):
        await asyncio.sleep(0)

    assert len(store.calls) == 1
    assert len(store.calls[0]) == 6
    assert buffer.pending == [make_entry(6)]


@pytest.mark.asyncio
async def test_timer_flushes_periodically():
    """The periodic timer flushes pending entries"""
    store = FakeStore()
    buffer = AccessLogBuffer(store, flush_interval=0.01, max_buffer_size=100)
    buffer.start()
    try:
        buffer.enqueue(make_entry(1))
        await asyncio.sleep(0.1)
        assert store.written == [make_entry(1)]
    finally:
        await buffer.stop()


@pytest.mark.asyncio
async def test_stop_flushes_remaining_entries():
    """Shutdown cancels the timer and writes whatever is still pending"""
    store = FakeStore()
    buffer = AccessLogBuffer(store, flush_interval=3600, max_buffer_size=100)
    buffer.start()
    buffer.enqueue(make_entry(1))

    await buffer.stop()

    assert store.written == [make_entry(1)]
    assert buffer.pending == []


# =========================
# Store
# =========================

@pytest.mark.asyncio
async def test_store_insert_many(session_factory):
    """All entries land in access_logs"""
    store = AccessLogStore(session_factory)

    result = await store.insert_many([make_entry(i) for i in range(3)])

    assert result == InsertManyResult(inserted=3)
    with session_factory() as session:
        rows = session.query(AccessLog).order_by(AccessLog.id).all()
    assert [r.endpoint for r in rows] == ["/transactions/0", "/transactions/1", "/transactions/2"]
    assert rows[0].accessed_resources == ["transaction:0"]


@pytest.mark.asyncio
async def test_store_partial_failure_inserts_the_rest(session_factory):
    """One bad entry does not block the others"""
    store = AccessLogStore(session_factory)
    bad = AccessLogEntry.model_construct(**{**make_entry(99).model_dump(), "endpoint": None})

    result = await store.insert_many([make_entry(1), bad, make_entry(2)])

    assert result == InsertManyResult(inserted=2, failed_indices=(1,))
    with session_factory() as session:
        assert session.query(AccessLog).count() == 2


@pytest.mark.asyncio
async def test_store_total_failure_raises(tmp_path):
    """Nothing written raises PersistenceTransientFailure"""
    engine = make_engine(f"sqlite:///{tmp_path / 'empty.db'}")  # no tables
    store = AccessLogStore(make_session_factory(engine))

    with pytest.raises(PersistenceTransientFailure):
        await store.insert_many([make_entry(1)])

    engine.dispose()


@pytest.mark.asyncio
async def test_buffer_keeps_entries_when_store_has_no_table(tmp_path):
    """Real store failure is swallowed by the buffer and entries are retained"""
    engine = make_engine(f"sqlite:///{tmp_path / 'empty.db'}")
    buffer = AccessLogBuffer(AccessLogStore(make_session_factory(engine)))
    buffer.enqueue(make_entry(1))

    await buffer.flush()

    assert buffer.pending == [make_entry(1)]
    engine.dispose()


@pytest.mark.asyncio
async def test_transient_row_failure_is_not_lost(session_factory):
    """A row lost to a dropped connection during the per-entry retry stays pending"""
    original_execute = Session.execute
    calls = []

    def flaky_execute(self, *args, **kwargs):
        calls.append(True)
        # 1st call is the batch, 3rd is the retry of the second entry
        if len(calls) in (1, 3):
            raise OperationalError("INSERT INTO access_logs", {}, Exception("connection reset"))
        return original_execute(self, *args, **kwargs)

    buffer = AccessLogBuffer(AccessLogStore(session_factory), max_buffer_size=100)
    entries = [make_entry(i) for i in range(3)]
    for entry in entries:
        buffer.enqueue(entry)

    with patch.object(Session, "execute", autospec=True, side_effect=flaky_execute):
        await buffer.flush()

    assert buffer.pending == [entries[1]]
    with session_factory() as session:
        endpoints = [row.endpoint for row in session.query(AccessLog).order_by(AccessLog.id)]
    assert endpoints == ["/transactions/0", "/transactions/2"]

    await buffer.flush()

    assert buffer.pending == []
    with session_factory() as session:
        assert session.query(AccessLog).count() == 3
