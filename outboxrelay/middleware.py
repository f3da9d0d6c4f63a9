"""Reusable middlewares for the relay's handler chain.

Middlewares are listed in Config.middlewares; the first is outermost.
Retries happen outside the chain, so every attempt passes through each one.
"""

from __future__ import annotations

import traceback

from .config import Handler, Message, Middleware


def recover() -> Middleware:
    """Turn any exception from downstream into a RuntimeError carrying its traceback.

    The original exception is kept as the cause. Place it first in the chain
    so it covers every other middleware as well as the handler.
    """

    def middleware(next_handler: Handler) -> Handler:
        async def handler(msg: Message) -> None:
            try:
                await next_handler(msg)
            except Exception as exc:
                stack = "".join(traceback.format_exception(exc))
                raise RuntimeError(f"outboxrelay: handler panic: {exc}\n{stack}") from exc

        return handler

    return middleware