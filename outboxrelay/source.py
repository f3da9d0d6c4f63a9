"""Interfaces between the relay, its message sources and the database driver."""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from typing import Any, Protocol

from .config import Message

PG_DUPLICATE_OBJECT = "42710"

_FNV32_OFFSET = 0x811C9DC5
_FNV32_PRIME = 0x01000193


class Source(Protocol):
    """Supplies messages to a relay. A single task must own all calls to next()."""

    async def next(self) -> tuple[Message, int]:
        """Return the next message and how many are still buffered after it."""
        ...

    async def confirm(self, *ids: int) -> None:
        """Mark delivered messages as done."""
        ...

    async def close(self) -> None:
        ...


class Connection(Protocol):
    """A regular PostgreSQL connection."""

    async def execute(self, query: str, *args: Any) -> None:
        ...

    async def fetch(self, query: str, *args: Any) -> list[Sequence[Any]]:
        """Run a query and return its rows in order."""
        ...

    async def wait_for_notification(self, timeout: float) -> str | None:
        """Wait for a LISTEN notification; return its payload, or None on timeout."""
        ...

    async def close(self) -> None:
        ...


class ReplicationConnection(Protocol):
    """A connection opened in logical replication mode."""

    async def create_replication_slot(self, slot_name: str, plugin: str) -> None:
        ...

    async def drop_replication_slot(self, slot_name: str) -> None:
        ...

    async def start_replication(
        self, slot_name: str, start_lsn: int, plugin_args: Sequence[str]
    ) -> None:
        ...

    async def receive_message(self, timeout: float) -> bytes | None:
        """Return the payload of the next CopyData message, or None on timeout."""
        ...

    async def send_standby_status_update(
        self, write_lsn: int, flush_lsn: int, apply_lsn: int
    ) -> None:
        ...

    async def close(self) -> None:
        ...


class Connector(Protocol):
    """Opens connections for a DSN."""

    async def connect(self, dsn: str) -> Connection:
        ...

    async def connect_replication(self, dsn: str) -> ReplicationConnection:
        ...


class DatabaseError(Exception):
    """An error reported by the server, with its SQLSTATE code when known."""

    def __init__(self, message: str, code: str | None = None) -> None:
        super().__init__(message)
        self.code = code


def quote_identifier(parts: str | Iterable[str]) -> str:
    """Quote a (possibly qualified) SQL identifier, escaping embedded quotes."""
    if isinstance(parts, str):
        parts = (parts,)
    quoted = [
        '"' + part.replace("\x00", "").replace('"', '""') + '"' for part in parts
    ]
    if not quoted:
        raise ValueError("identifier has no parts")
    return ".".join(quoted)


def advisory_lock_key(table: str) -> int:
    """32-bit FNV-1a hash of the table name, used as the advisory lock key."""
    value = _FNV32_OFFSET
    for byte in table.encode():
        value ^= byte
        value = (value * _FNV32_PRIME) & 0xFFFFFFFF
    return value