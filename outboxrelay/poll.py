"""Poll-based message source, optionally woken early by LISTEN/NOTIFY."""

from __future__ import annotations

import asyncio
import json
from collections import deque
from collections.abc import Iterable, Sequence
from typing import Any

from .config import Config, Message
from .source import Connection, DatabaseError, advisory_lock_key, quote_identifier


def _to_bytes(value: Any) -> bytes:
    if value is None:
        return b""
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value)
    if isinstance(value, str):
        return value.encode()
    return json.dumps(value).encode()


class PollSource:
    """Reads outbox rows in id order and deletes them once confirmed.

    A new batch is fetched only after every message of the previous one
    has been confirmed.
    """

    def __init__(
        self,
        conn: Connection | None = None,
        delete_conn: Connection | None = None,
        *,
        select_query: str = "",
        delete_query: str = "",
        poll_interval: float = 1.0,
        batch_size: int = 100,
        notify_channel: str = "",
        topic_enabled: bool = True,
        created_at_enabled: bool = True,
        extra_columns: Iterable[str] = (),
    ) -> None:
        self.conn = conn
        self.delete_conn = delete_conn
        self.select_query = select_query
        self.delete_query = delete_query
        self.poll_interval = poll_interval
        self.batch_size = batch_size
        self.notify_channel = notify_channel
        self.topic_enabled = topic_enabled
        self.created_at_enabled = created_at_enabled
        self.extra_columns = list(extra_columns)
        self.buffered: deque[Message] = deque()
        self.batch_in_flight = 0
        self.confirm_signal = asyncio.Event()

    @classmethod
    async def open(cls, dsn: str, config: Config) -> PollSource:
        """Connect, take the table's advisory lock and prepare the queries."""
        cfg = config.with_defaults()
        if cfg.connector is None:
            raise ValueError("outboxrelay: no connector configured")
        polling = cfg.polling
        if polling is None:
            raise ValueError("outboxrelay: polling is not configured")
        schema = cfg.schema

        conn = await cfg.connector.connect(dsn)
        try:
            await conn.execute("SELECT pg_advisory_lock($1)", advisory_lock_key(schema.table))
            if polling.notify_channel:
                await conn.execute("LISTEN " + quote_identifier(polling.notify_channel))
            delete_conn = await cfg.connector.connect(dsn)
        except BaseException:
            await conn.close()
            raise

        id_col = quote_identifier(schema.id_column)
        table = quote_identifier(schema.table_ident())
        cols = [id_col, quote_identifier(schema.payload_column)]
        if schema.topic_enabled():
            cols.append(quote_identifier(schema.topic_column))
        if schema.created_at_enabled():
            cols.append(quote_identifier(schema.created_at_column))
        cols.extend(quote_identifier(name) for name in schema.extra_columns)

        return cls(
            conn,
            delete_conn,
            select_query=f"SELECT {', '.join(cols)} FROM {table} ORDER BY {id_col} LIMIT $1",
            delete_query=f"DELETE FROM {table} WHERE {id_col} = ANY($1)",
            poll_interval=polling.poll_interval,
            batch_size=polling.batch_size,
            notify_channel=polling.notify_channel,
            topic_enabled=schema.topic_enabled(),
            created_at_enabled=schema.created_at_enabled(),
            extra_columns=schema.extra_columns,
        )

    def _row_to_message(self, row: Sequence[Any]) -> Message:
        values = iter(row)
        msg = Message(id=int(next(values)), payload=_to_bytes(next(values)))
        if self.topic_enabled:
            topic = next(values)
            msg.topic = "" if topic is None else str(topic)
        if self.created_at_enabled:
            msg.created_at = next(values)
        if self.extra_columns:
            msg.extras = {name: next(values, None) for name in self.extra_columns}
        return msg

    async def next(self) -> tuple[Message, int]:
        while True:
            if self.buffered:
                msg = self.buffered.popleft()
                return msg, len(self.buffered)

            if self.batch_in_flight > 0:
                await self.confirm_signal.wait()
                self.confirm_signal.clear()

            rows = await self.conn.fetch(self.select_query, self.batch_size)
            messages = [self._row_to_message(row) for row in rows]
            if messages:
                return self.arm_batch(messages), len(self.buffered)

            await self._wait_for_activity()

    async def _wait_for_activity(self) -> None:
        if not self.notify_channel:
            await asyncio.sleep(self.poll_interval)
            return
        try:
            await self.conn.wait_for_notification(self.poll_interval)
        except asyncio.CancelledError:
            raise
        except Exception:
            # A failed wait just means polling again.
            return

    def arm_batch(self, messages: Sequence[Message]) -> Message:
        """Buffer a freshly fetched batch and return its first message."""
        self.confirm_signal.clear()
        self.buffered = deque(messages[1:])
        self.batch_in_flight = len(messages)
        return messages[0]

    async def confirm(self, *args: int) -> None:
        ids = list(args)
        try:
            await self.delete_conn.execute(self.delete_query, ids)
        except Exception as exc:
            raise DatabaseError(
                f"outboxrelay: delete ids={ids}: {exc}", getattr(exc, "code", None)
            ) from exc
        self.batch_in_flight -= len(ids)
        if self.batch_in_flight <= 0:
            self.batch_in_flight = 0
            self.confirm_signal.set()

    async def close(self) -> None:
        for conn in (self.conn, self.delete_conn):
            if conn is not None:
                try:
                    await conn.close()
                except Exception:
                    pass