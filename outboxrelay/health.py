"""HTTP liveness and readiness endpoints."""

from __future__ import annotations

import socket

from aiohttp import web


class HealthServer:
    """Serves GET /health (always 200) and GET /ready (200 when ready, else 503)."""

    def __init__(self, addr: str) -> None:
        self.addr = addr
        self.ready = False
        self._runner: web.AppRunner | None = None
        self._app = web.Application()
        self._app.router.add_get("/health", self._health)
        self._app.router.add_get("/ready", self._ready)

    async def _health(self, request: web.Request) -> web.Response:
        return web.Response(status=200)

    async def _ready(self, request: web.Request) -> web.Response:
        return web.Response(status=200 if self.ready else 503)

    async def start(self, sock: socket.socket | None = None) -> None:
        """Begin serving on sock if given, otherwise on the configured address."""
        if self._runner is not None:
            raise RuntimeError("health server already started")
        runner = web.AppRunner(self._app, access_log=None)
        await runner.setup()
        if sock is not None:
            site: web.BaseSite = web.SockSite(runner, sock)
        else:
            host, _, port = self.addr.rpartition(":")
            site = web.TCPSite(runner, host.strip("[]") or None, int(port))
        try:
            await site.start()
        except BaseException:
            await runner.cleanup()
            raise
        self._runner = runner

    async def shutdown(self) -> None:
        """Stop serving; does nothing if the server is not running."""
        runner, self._runner = self._runner, None
        if runner is not None:
            await runner.cleanup()