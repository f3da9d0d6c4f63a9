"""Relay configuration, the message type and handler composition."""

from __future__ import annotations

import dataclasses
import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .source import Connector

MAX_RETRY_DELAY = 60.0
FLUSH_TIMEOUT = 5.0
COLUMN_DISABLED = "-"

DEFAULT_SLOT_NAME = "outbox_relay"
DEFAULT_RETRY_DELAY = 1.0
DEFAULT_KEEPALIVE_INTERVAL = 5.0
DEFAULT_POLL_INTERVAL = 1.0
DEFAULT_BATCH_SIZE = 100


@dataclass
class Message:
    """A single outbox row delivered to the handler."""

    id: int = 0
    topic: str = ""
    payload: bytes = b""
    created_at: datetime | None = None
    extras: dict[str, Any] | None = None


Handler = Callable[[Message], Awaitable[None]]
Middleware = Callable[[Handler], Handler]


@dataclass
class SchemaConfig:
    """Names of the outbox table and its columns.

    A topic or created-at column set to "" or "-" is not read.
    """

    table: str = "outbox"
    id_column: str = "id"
    topic_column: str = "topic"
    payload_column: str = "payload"
    created_at_column: str = "created_at"
    extra_columns: list[str] = field(default_factory=list)

    def table_ident(self) -> tuple[str, ...]:
        """Split the table name into (schema, table) or (table,)."""
        namespace, sep, name = self.table.partition(".")
        if sep:
            return (namespace, name)
        return (self.table,)

    def topic_enabled(self) -> bool:
        return self.topic_column not in ("", COLUMN_DISABLED)

    def created_at_enabled(self) -> bool:
        return self.created_at_column not in ("", COLUMN_DISABLED)


@dataclass
class PollingConfig:
    """Poll-based delivery settings; intervals are in seconds."""

    poll_interval: float = 0.0
    batch_size: int = 0
    notify_channel: str = ""


@dataclass
class Config:
    """Relay behaviour. Zero values are replaced by defaults in with_defaults().

    Durations are in seconds. Middlewares are applied in the order given,
    the first one outermost; retries happen outside the chain.
    """

    slot_name: str = ""
    publications: list[str] = field(default_factory=list)
    retry_delay: float = 0.0
    max_retries: int = 0
    on_dropped: Callable[[Message, BaseException], None] | None = None
    schema: SchemaConfig = field(default_factory=SchemaConfig)
    logger: logging.Logger | None = None
    polling: PollingConfig | None = None
    middlewares: list[Middleware] = field(default_factory=list)
    keepalive_interval: float = 0.0
    health_addr: str = ""
    connector: Connector | None = None

    def with_defaults(self) -> Config:
        """Return a copy with defaults filled in and colliding extra columns removed."""
        polling = self.polling
        if polling is not None:
            polling = dataclasses.replace(
                polling,
                poll_interval=polling.poll_interval or DEFAULT_POLL_INTERVAL,
                batch_size=polling.batch_size or DEFAULT_BATCH_SIZE,
            )

        schema = self.schema
        if schema.extra_columns:
            core = {schema.id_column, schema.payload_column}
            if schema.topic_enabled():
                core.add(schema.topic_column)
            if schema.created_at_enabled():
                core.add(schema.created_at_column)
            extras = [name for name in schema.extra_columns if name not in core]
        else:
            extras = list(schema.extra_columns)
        schema = dataclasses.replace(schema, extra_columns=extras)

        logger = self.logger if self.logger is not None else logging.getLogger("outboxrelay")

        return dataclasses.replace(
            self,
            slot_name=self.slot_name or DEFAULT_SLOT_NAME,
            retry_delay=self.retry_delay or DEFAULT_RETRY_DELAY,
            keepalive_interval=self.keepalive_interval or DEFAULT_KEEPALIVE_INTERVAL,
            logger=logger,
            polling=polling,
            schema=schema,
            middlewares=list(self.middlewares),
        )


def next_delay(current: float, base: float, ran_for: float) -> float:
    """Reconnect back-off: reset after a stable run, otherwise double up to the cap."""
    if ran_for >= MAX_RETRY_DELAY:
        return base
    return min(current * 2, MAX_RETRY_DELAY)


def wrap(handler: Handler, middlewares: Iterable[Middleware] | None) -> Handler:
    """Compose middlewares around handler so that the first one is outermost."""
    for middleware in reversed(list(middlewares or ())):
        handler = middleware(handler)
    return handler