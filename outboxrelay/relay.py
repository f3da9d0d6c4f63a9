"""Transactional outbox relay for PostgreSQL.

A relay reads messages written to an outbox table and delivers them to an
application-defined handler at least once, in commit order. Two delivery
backends are supported: logical replication (the default) and polling with
optional LISTEN/NOTIFY wake-ups.
"""

from __future__ import annotations

import asyncio
from typing import NoReturn

from .config import FLUSH_TIMEOUT, MAX_RETRY_DELAY, Config, Handler, Message, next_delay, wrap
from .health import HealthServer
from .poll import PollSource
from .source import Source
from .wal import WalListener

_CLOSE_TIMEOUT = 5.0


class Relay:
    """Connects to PostgreSQL, reads outbox rows and delivers them to a handler."""

    def __init__(self, dsn: str, handler: Handler, config: Config | None = None) -> None:
        self.dsn = dsn
        self.config = (config or Config()).with_defaults()
        self.handler = wrap(handler, self.config.middlewares)
        self.health = HealthServer(self.config.health_addr) if self.config.health_addr else None
        self._logger = self.config.logger

    async def start(self) -> NoReturn:
        """Deliver messages until cancelled, reconnecting with exponential back-off."""
        if self.health is not None:
            try:
                await self.health.start()
            except Exception as exc:
                self._logger.error("outboxrelay: health server error: %s", exc)
        try:
            await self._reconnect_loop()
        finally:
            if self.health is not None:
                await self.health.shutdown()

    async def _open_source(self) -> Source:
        if self.config.polling is not None:
            return await PollSource.open(self.dsn, self.config)
        return await WalListener.open(self.dsn, self.config)

    async def _reconnect_loop(self) -> NoReturn:
        loop = asyncio.get_running_loop()
        delay = self.config.retry_delay
        while True:
            ran_for = 0.0
            error: BaseException | None = None
            try:
                source = await self._open_source()
            except Exception as exc:
                error = exc
            else:
                if self.health is not None:
                    self.health.ready = True
                started = loop.time()
                try:
                    await self.run(source)
                except Exception as exc:
                    error = exc
                finally:
                    try:
                        async with asyncio.timeout(_CLOSE_TIMEOUT):
                            await source.close()
                    except Exception:
                        pass
                    ran_for = loop.time() - started
                    if self.health is not None:
                        self.health.ready = False

            self._logger.error(
                "outboxrelay: connection error: %s (retry in %.3fs)", error, delay
            )
            await asyncio.sleep(delay)
            delay = next_delay(delay, self.config.retry_delay, ran_for)

    async def run(self, source: Source) -> NoReturn:
        """Deliver messages from source until cancelled or the source fails.

        Delivered ids are confirmed when the source's buffer drains, on every
        keepalive tick, and once more when the run ends.
        """
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue[tuple[Message, int]] = asyncio.Queue(maxsize=1)
        reader = asyncio.create_task(self._read(source, queue))
        pending: list[int] = []
        interval = self.config.keepalive_interval
        next_tick = loop.time() + interval

        async def flush() -> None:
            if not pending:
                return
            async with asyncio.timeout(FLUSH_TIMEOUT):
                await source.confirm(*pending)
            pending.clear()

        try:
            while True:
                get = asyncio.ensure_future(queue.get())
                try:
                    await asyncio.wait(
                        {get, reader},
                        timeout=max(0.0, next_tick - loop.time()),
                        return_when=asyncio.FIRST_COMPLETED,
                    )
                finally:
                    if not get.done():
                        get.cancel()

                if get.done() and not get.cancelled():
                    msg, remaining = get.result()
                    queue.task_done()
                    self._logger.debug(
                        "outboxrelay: message received id=%s topic=%s", msg.id, msg.topic
                    )
                    await self.deliver_with_retry(msg)
                    pending.append(msg.id)
                    if remaining == 0:
                        await flush()
                elif reader.done():
                    reader.result()
                    raise RuntimeError("outboxrelay: message reader stopped")

                if loop.time() >= next_tick:
                    await flush()
                    next_tick = loop.time() + interval
        finally:
            if pending:
                ids = list(pending)
                try:
                    await flush()
                except Exception as exc:
                    self._logger.error(
                        "outboxrelay: flush on close failed ids=%s: %s", ids, exc
                    )
            reader.cancel()
            await asyncio.gather(reader, return_exceptions=True)

    @staticmethod
    async def _read(source: Source, queue: asyncio.Queue[tuple[Message, int]]) -> None:
        while True:
            item = await source.next()
            await queue.put(item)
            await queue.join()

    async def deliver_with_retry(self, msg: Message) -> None:
        """Call the handler until it succeeds or the retry limit drops the message."""
        delay = self.config.retry_delay
        retries = 0
        while True:
            try:
                await self.handler(msg)
            except Exception as exc:
                max_retries = self.config.max_retries
                if max_retries > 0 and retries >= max_retries:
                    self._logger.error(
                        "outboxrelay: message dropped id=%s attempts=%d: %s",
                        msg.id, retries + 1, exc,
                    )
                    if self.config.on_dropped is not None:
                        self.config.on_dropped(msg, exc)
                    return
                self._logger.error(
                    "outboxrelay: handler error id=%s attempt=%d: %s (retry in %.3fs)",
                    msg.id, retries + 1, exc, delay,
                )
                await asyncio.sleep(delay)
                delay = min(delay * 2, MAX_RETRY_DELAY)
                retries += 1
                continue
            self._logger.debug(
                "outboxrelay: message delivered id=%s topic=%s", msg.id, msg.topic
            )
            return