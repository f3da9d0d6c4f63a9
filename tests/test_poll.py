import asyncio

import pytest

from outboxrelay.config import Config, Message, PollingConfig, SchemaConfig
from outboxrelay.poll import PollSource
from outboxrelay.source import DatabaseError, advisory_lock_key


class FakeConn:
    def __init__(self, batches=(), fail_execute=False):
        self.batches = list(batches)
        self.executed = []
        self.fetched = []
        self.closed = False
        self.fail_execute = fail_execute

    async def execute(self, query, *args):
        if self.fail_execute:
            raise RuntimeError("connection closed")
        self.executed.append((query, args))

    async def fetch(self, query, *args):
        self.fetched.append((query, args))
        return self.batches.pop(0) if self.batches else []

    async def wait_for_notification(self, timeout):
        await asyncio.sleep(0)
        return None

    async def close(self):
        self.closed = True


class FakeConnector:
    def __init__(self, *conns):
        self.conns = list(conns)

    async def connect(self, dsn):
        return self.conns.pop(0)

    async def connect_replication(self, dsn):
        raise AssertionError("not used")


def test_arm_batch_drains_stale_confirm_signal():
    p = PollSource()
    p.confirm_signal.set()
    first = p.arm_batch([Message(id=1), Message(id=2), Message(id=3)])
    assert first.id == 1
    assert p.batch_in_flight == 3
    assert len(p.buffered) == 2
    assert not p.confirm_signal.is_set()


def test_arm_batch_leaves_signal_clear_without_stale_signal():
    p = PollSource()
    p.arm_batch([Message(id=1)])
    assert not p.confirm_signal.is_set()
    assert p.batch_in_flight == 1


@pytest.mark.asyncio
async def test_open_builds_queries_and_takes_lock():
    conn, delete_conn = FakeConn(), FakeConn()
    cfg = Config(
        polling=PollingConfig(notify_channel="outbox_events"),
        connector=FakeConnector(conn, delete_conn),
    )
    src = await PollSource.open("dsn", cfg)
    assert src.select_query == (
        'SELECT "id", "payload", "topic", "created_at" FROM "outbox" ORDER BY "id" LIMIT $1'
    )
    assert src.delete_query == 'DELETE FROM "outbox" WHERE "id" = ANY($1)'
    assert conn.executed[0] == ("SELECT pg_advisory_lock($1)", (advisory_lock_key("outbox"),))
    assert conn.executed[1] == ('LISTEN "outbox_events"', ())
    assert src.batch_size == 100
    assert src.poll_interval == 1.0


@pytest.mark.asyncio
async def test_open_with_disabled_columns_and_extras():
    cfg = Config(
        polling=PollingConfig(),
        schema=SchemaConfig(
            table="app.events", topic_column="-", created_at_column="-",
            extra_columns=["aggregate_id"],
        ),
        connector=FakeConnector(FakeConn(), FakeConn()),
    )
    src = await PollSource.open("dsn", cfg)
    assert src.select_query == (
        'SELECT "id", "payload", "aggregate_id" FROM "app"."events" ORDER BY "id" LIMIT $1'
    )


@pytest.mark.asyncio
async def test_next_returns_rows_with_remaining_counts():
    conn = FakeConn([[(1, b"a", "t", None), (2, "b", "t", None)]])
    src = PollSource(conn, FakeConn(), select_query="q")
    first = await src.next()
    second = await src.next()
    assert (first[0].id, first[0].payload, first[1]) == (1, b"a", 1)
    assert (second[0].id, second[0].payload, second[1]) == (2, b"b", 0)


@pytest.mark.asyncio
async def test_extras_are_mapped_by_name():
    conn = FakeConn([[(5, b"p", "agg-0", "pk-0")]])
    src = PollSource(
        conn, FakeConn(), topic_enabled=False, created_at_enabled=False,
        extra_columns=["aggregate_id", "partition_key"],
    )
    msg, _ = await src.next()
    assert msg.topic == ""
    assert msg.extras == {"aggregate_id": "agg-0", "partition_key": "pk-0"}


@pytest.mark.asyncio
async def test_next_waits_for_confirm_before_refetch():
    conn = FakeConn([[(1, b"a", "t", None)], [(2, b"b", "t", None)]])
    delete_conn = FakeConn()
    src = PollSource(conn, delete_conn, delete_query="del", poll_interval=0.01)
    msg, _ = await src.next()
    task = asyncio.create_task(src.next())
    await asyncio.sleep(0.05)
    assert not task.done()
    assert len(conn.fetched) == 1
    await src.confirm(msg.id)
    second, remaining = await asyncio.wait_for(task, 1)
    assert second.id == 2
    assert remaining == 0
    assert delete_conn.executed == [("del", ([1],))]


@pytest.mark.asyncio
async def test_confirm_failure_raises_database_error():
    src = PollSource(FakeConn(), FakeConn(fail_execute=True))
    src.batch_in_flight = 1
    with pytest.raises(DatabaseError):
        await src.confirm(1)
    assert src.batch_in_flight == 1


@pytest.mark.asyncio
async def test_close_closes_both_connections():
    a, b = FakeConn(), FakeConn()
    await PollSource(a, b).close()
    assert a.closed and b.closed