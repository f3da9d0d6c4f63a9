"""Logical-replication message source using the pgoutput plugin."""

from __future__ import annotations

import asyncio
import json
import re
import struct
from collections import deque
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any

from .config import Config, Message
from .inflight import InFlightTracker
from .source import (
    PG_DUPLICATE_OBJECT,
    Connection,
    Connector,
    DatabaseError,
    ReplicationConnection,
    quote_identifier,
)

_PG_EPOCH = datetime(2000, 1, 1, tzinfo=timezone.utc)
_XLOG_DATA = ord("w")
_KEEPALIVE = ord("k")

_OID_BOOL = 16
_OID_BYTEA = 17
_INT_OIDS = {20, 21, 23, 26}
_FLOAT_OIDS = {700, 701}
_TEXT_OIDS = {18, 19, 25, 1042, 1043}
_JSON_OIDS = {114, 3802}
_OID_NUMERIC = 1700
_TIMESTAMP_OIDS = {1114, 1184}


@dataclass
class Column:
    flags: int
    name: str
    data_type: int
    type_modifier: int


@dataclass
class TupleColumn:
    kind: str
    data: bytes = b""


@dataclass
class BeginMessage:
    final_lsn: int
    commit_time: datetime
    xid: int


@dataclass
class RelationMessage:
    relation_id: int
    namespace: str
    relation_name: str
    replica_identity: int
    columns: list[Column] = field(default_factory=list)


@dataclass
class InsertMessage:
    relation_id: int
    columns: list[TupleColumn] = field(default_factory=list)


@dataclass
class CommitMessage:
    flags: int
    commit_lsn: int
    transaction_end_lsn: int
    commit_time: datetime


@dataclass
class XLogData:
    wal_start: int
    server_wal_end: int
    server_time: datetime
    wal_data: bytes


@dataclass
class PrimaryKeepalive:
    server_wal_end: int
    server_time: datetime
    reply_requested: bool


def parse_lsn(text: str) -> int:
    """Parse an LSN written as 'X/Y' in hexadecimal."""
    high, sep, low = text.partition("/")
    try:
        if not sep:
            raise ValueError
        return (int(high, 16) << 32) | int(low, 16)
    except ValueError:
        raise ValueError(f"invalid LSN {text!r}") from None


def format_lsn(lsn: int) -> str:
    return f"{lsn >> 32:X}/{lsn & 0xFFFFFFFF:X}"


def _pg_time(micros: int) -> datetime:
    return _PG_EPOCH + timedelta(microseconds=micros)


class _Reader:
    def __init__(self, data: bytes) -> None:
        self.data = bytes(data)
        self.pos = 0

    def unpack(self, fmt: str) -> tuple[Any, ...]:
        try:
            values = struct.unpack_from(fmt, self.data, self.pos)
        except struct.error as exc:
            raise ValueError(f"message too short: {exc}") from None
        self.pos += struct.calcsize(fmt)
        return values

    def cstring(self) -> str:
        end = self.data.find(b"\x00", self.pos)
        if end < 0:
            raise ValueError("unterminated string")
        value = self.data[self.pos:end].decode()
        self.pos = end + 1
        return value

    def take(self, n: int) -> bytes:
        if self.pos + n > len(self.data):
            raise ValueError("message too short")
        value = self.data[self.pos:self.pos + n]
        self.pos += n
        return value


def parse_xlog_data(data: bytes) -> XLogData:
    """Parse an XLogData body (without its leading 'w')."""
    reader = _Reader(data)
    start, end, micros = reader.unpack(">QQq")
    return XLogData(start, end, _pg_time(micros), reader.data[reader.pos:])


def parse_keepalive(data: bytes) -> PrimaryKeepalive:
    """Parse a primary keepalive body (without its leading 'k')."""
    end, micros, reply = _Reader(data).unpack(">Qq?")
    return PrimaryKeepalive(end, _pg_time(micros), reply)


def parse_logical_message(
    data: bytes,
) -> BeginMessage | RelationMessage | InsertMessage | CommitMessage | None:
    """Parse a pgoutput message; kinds the relay does not use give None."""
    if not data:
        raise ValueError("empty logical message")
    reader = _Reader(data)
    kind = chr(reader.take(1)[0])
    if kind == "B":
        lsn, micros, xid = reader.unpack(">QqI")
        return BeginMessage(lsn, _pg_time(micros), xid)
    if kind == "C":
        flags, commit_lsn, end_lsn, micros = reader.unpack(">BQQq")
        return CommitMessage(flags, commit_lsn, end_lsn, _pg_time(micros))
    if kind == "R":
        (relation_id,) = reader.unpack(">I")
        namespace = reader.cstring()
        name = reader.cstring()
        identity, count = reader.unpack(">BH")
        columns = []
        for _ in range(count):
            (flags,) = reader.unpack(">B")
            col_name = reader.cstring()
            oid, modifier = reader.unpack(">Ii")
            columns.append(Column(flags, col_name, oid, modifier))
        return RelationMessage(relation_id, namespace, name, identity, columns)
    if kind == "I":
        relation_id, marker = reader.unpack(">IB")
        if marker != ord("N"):
            raise ValueError(f"unexpected tuple marker {marker!r}")
        (count,) = reader.unpack(">H")
        tuple_columns = []
        for _ in range(count):
            col_kind = chr(reader.take(1)[0])
            if col_kind in ("t", "b"):
                (length,) = reader.unpack(">I")
                tuple_columns.append(TupleColumn(col_kind, reader.take(length)))
            else:
                tuple_columns.append(TupleColumn(col_kind))
        return InsertMessage(relation_id, tuple_columns)
    return None


def _decode_bytea(data: bytes) -> bytes:
    if data.startswith(b"\\x"):
        return bytes.fromhex(data[2:].decode())
    return data


def _parse_timestamp(text: str) -> datetime:
    text = text.strip()
    text = re.sub(r"([+-]\d\d)$", r"\1:00", text)
    value = datetime.fromisoformat(text)
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


def _decode_value(oid: int, data: bytes) -> Any:
    text = data.decode()
    if oid in _INT_OIDS:
        return int(text)
    if oid == _OID_BOOL:
        return text == "t"
    if oid in _FLOAT_OIDS:
        return float(text)
    if oid == _OID_NUMERIC:
        return Decimal(text)
    if oid in _JSON_OIDS:
        return json.loads(text)
    if oid == _OID_BYTEA:
        return _decode_bytea(data)
    if oid in _TIMESTAMP_OIDS:
        return _parse_timestamp(text)
    return text


async def drop_slot(dsn: str, slot_name: str, connector: Connector) -> None:
    """Drop a replication slot, e.g. when decommissioning a relay."""
    conn = await connector.connect_replication(dsn)
    try:
        await conn.drop_replication_slot(slot_name)
    except Exception as exc:
        raise DatabaseError(
            f"outboxrelay: drop slot {slot_name!r}: {exc}", getattr(exc, "code", None)
        ) from exc
    finally:
        await conn.close()


class WalListener:
    """Streams committed outbox inserts from a replication slot, one transaction per batch."""

    def __init__(
        self,
        repl_conn: ReplicationConnection,
        db_conn: Connection,
        config: Config,
    ) -> None:
        cfg = config.with_defaults()
        schema = cfg.schema
        ident = schema.table_ident()
        self.repl_conn = repl_conn
        self.db_conn = db_conn
        self.table_namespace = ident[0] if len(ident) > 1 else ""
        self.table_name = ident[-1]
        self.id_column = schema.id_column
        self.topic_column = schema.topic_column
        self.payload_column = schema.payload_column
        self.created_at_column = schema.created_at_column
        self.extra_columns = set(schema.extra_columns)
        self.delete_query = (
            f"DELETE FROM {quote_identifier(ident)} "
            f"WHERE {quote_identifier(schema.id_column)} = ANY($1)"
        )
        self.standby_interval = cfg.keepalive_interval
        self.logger = cfg.logger
        self.relations: dict[int, RelationMessage] = {}
        self.tracker = InFlightTracker()
        self.buffered: deque[Message] = deque()
        self._batches: asyncio.Queue[tuple[list[Message], int]] = asyncio.Queue(maxsize=1)
        self._error: BaseException | None = None
        self._error_event = asyncio.Event()
        self._read_task: asyncio.Task[None] | None = None

    @classmethod
    async def open(cls, dsn: str, config: Config) -> WalListener:
        """Connect, ensure the slot exists and is idle, and start streaming."""
        cfg = config.with_defaults()
        if cfg.connector is None:
            raise ValueError("outboxrelay: no connector configured")
        repl = await cfg.connector.connect_replication(dsn)
        try:
            db = await cfg.connector.connect(dsn)
        except BaseException:
            await repl.close()
            raise
        try:
            rows = await db.fetch(
                "SELECT active FROM pg_replication_slots WHERE slot_name = $1", cfg.slot_name
            )
            if not rows:
                try:
                    await repl.create_replication_slot(cfg.slot_name, "pgoutput")
                except DatabaseError as exc:
                    if exc.code == PG_DUPLICATE_OBJECT:
                        raise RuntimeError(
                            f"outboxrelay: replication slot {cfg.slot_name!r} was created by "
                            f"another instance between check and create: {exc}"
                        ) from exc
                    raise
            elif rows[0][0]:
                raise RuntimeError(f"outboxrelay: replication slot {cfg.slot_name!r} is active")
            plugin_args = ["proto_version '1'", f"publication_names '{','.join(cfg.publications)}'"]
            await repl.start_replication(cfg.slot_name, 0, plugin_args)
        except BaseException:
            await repl.close()
            await db.close()
            raise
        listener = cls(repl, db, cfg)
        listener._read_task = asyncio.create_task(listener._read_loop())
        return listener

    def _emit_error(self, exc: BaseException) -> None:
        if self._error is None:
            self._error = exc
            self._error_event.set()

    async def _read_loop(self) -> None:
        try:
            await self._stream()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._emit_error(exc)

    async def _stream(self) -> None:
        loop = asyncio.get_running_loop()
        pending: list[Message] = []
        tx_lsn = 0
        next_standby = loop.time() + self.standby_interval

        while True:
            timeout = max(0.0, next_standby - loop.time())
            try:
                data = await self.repl_conn.receive_message(timeout)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                raise RuntimeError(f"outboxrelay: wal receive: {exc}") from exc

            if loop.time() >= next_standby:
                await self._standby("standby status update")
                next_standby = loop.time() + self.standby_interval

            if not data:
                continue

            if data[0] == _KEEPALIVE:
                keepalive = parse_keepalive(data[1:])
                if keepalive.reply_requested:
                    await self._standby("standby reply")
                    next_standby = loop.time() + self.standby_interval
            elif data[0] == _XLOG_DATA:
                message = parse_logical_message(parse_xlog_data(data[1:]).wal_data)
                if isinstance(message, BeginMessage):
                    tx_lsn = message.final_lsn
                    pending = []
                elif isinstance(message, RelationMessage):
                    self.relations[message.relation_id] = message
                elif isinstance(message, InsertMessage):
                    relation = self.relations.get(message.relation_id)
                    if relation is None or relation.relation_name != self.table_name:
                        continue
                    if self.table_namespace and relation.namespace != self.table_namespace:
                        continue
                    pending.append(self.decode_insert(relation, message.columns))
                elif isinstance(message, CommitMessage):
                    if not pending:
                        self.tracker.advance_idle(tx_lsn)
                        continue
                    batch, pending = pending, []
                    next_standby = await self._deliver((batch, tx_lsn), next_standby)

    async def _standby(self, what: str) -> None:
        try:
            await self.send_standby_status()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            raise RuntimeError(f"outboxrelay: {what}: {exc}") from exc

    async def _deliver(self, batch: tuple[list[Message], int], next_standby: float) -> float:
        loop = asyncio.get_running_loop()
        while True:
            wait = next_standby - loop.time()
            if wait <= 0:
                await self._standby("standby status update")
                next_standby = loop.time() + self.standby_interval
                continue
            try:
                await asyncio.wait_for(self._batches.put(batch), wait)
                return next_standby
            except TimeoutError:
                continue

    async def next(self) -> tuple[Message, int]:
        if self.buffered:
            msg = self.buffered.popleft()
            return msg, len(self.buffered)

        get_task = asyncio.ensure_future(self._batches.get())
        err_task = asyncio.ensure_future(self._error_event.wait())
        try:
            await asyncio.wait({get_task, err_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            get_task.cancel()
            err_task.cancel()
        if get_task.done() and not get_task.cancelled():
            messages, lsn = get_task.result()
            self.tracker.register(lsn, [m.id for m in messages])
            self.buffered = deque(messages[1:])
            return messages[0], len(self.buffered)
        assert self._error is not None
        raise self._error

    async def confirm(self, *args: int) -> None:
        """Delete the rows, then let the confirmed LSN advance.

        Unknown or repeated ids raise ValueError before anything is deleted.
        """
        ids = list(args)
        self.tracker.validate(ids)
        try:
            await self.db_conn.execute(self.delete_query, ids)
        except Exception as exc:
            raise DatabaseError(
                f"outboxrelay: delete ids={ids}: {exc}", getattr(exc, "code", None)
            ) from exc
        self.tracker.apply(ids)

    async def close(self) -> None:
        task, self._read_task = self._read_task, None
        exited = True
        if task is not None:
            task.cancel()
            done, _ = await asyncio.wait({task}, timeout=5.0)
            exited = bool(done)
        if exited:
            try:
                await asyncio.wait_for(self.send_standby_status(), 2.0)
            except Exception as exc:
                if self.logger is not None:
                    self.logger.error("outboxrelay: final standby status failed: %s", exc)
        for conn in (self.repl_conn, self.db_conn):
            try:
                await conn.close()
            except Exception:
                pass

    async def send_standby_status(self) -> None:
        lsn = self.tracker.confirmed_lsn
        await self.repl_conn.send_standby_status_update(lsn, lsn, lsn)

    def decode_insert(
        self, relation: RelationMessage, columns: Sequence[TupleColumn]
    ) -> Message:
        """Build a message from the text-format columns of an inserted row."""
        msg = Message()
        extras: dict[str, Any] | None = None
        for i, col in enumerate(columns):
            if col.kind != "t":
                continue
            if i >= len(relation.columns):
                break
            definition = relation.columns[i]
            name = definition.name
            if name == self.id_column:
                try:
                    msg.id = int(col.data.decode())
                except ValueError as exc:
                    raise ValueError(f"outboxrelay: decode id: {exc}") from exc
            elif name == self.topic_column:
                msg.topic = col.data.decode()
            elif name == self.payload_column:
                try:
                    if definition.data_type == _OID_BYTEA:
                        msg.payload = _decode_bytea(col.data)
                    else:
                        msg.payload = bytes(col.data)
                except ValueError as exc:
                    raise ValueError(f"outboxrelay: decode payload: {exc}") from exc
            elif name == self.created_at_column:
                try:
                    msg.created_at = _parse_timestamp(col.data.decode())
                except ValueError as exc:
                    raise ValueError(f"outboxrelay: decode created_at: {exc}") from exc
            elif name in self.extra_columns:
                if extras is None:
                    extras = {}
                try:
                    extras[name] = _decode_value(definition.data_type, col.data)
                except (ValueError, UnicodeDecodeError, ArithmeticError):
                    extras[name] = col.data.decode(errors="replace")
        msg.extras = extras
        return msg