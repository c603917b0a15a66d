"""Accept loop over the activation socket with optional idle shutdown."""

from __future__ import annotations

import asyncio
import logging
import socket
from collections.abc import Callable

from aiohttp import web

logger = logging.getLogger(__name__)

_ACCEPT_ERROR_BACKOFF = 0.1


class ConnectionLoop:
    """Accepts connections and hands each one to the aiohttp server protocol.

    aiohttp serves every connection in its own task, so a slow client never
    blocks the next accept. With *max_idle_time* set, each accept races that
    many seconds; expiry ends `serve` normally unless *busy* reports work still
    in progress, in which case the loop keeps accepting and the idle timer
    starts over.
    """

    def __init__(
        self,
        listener: socket.socket,
        app: web.Application,
        *,
        max_idle_time: float | None = None,
        busy: Callable[[], bool] | None = None,
    ) -> None:
        self._listener = listener
        self._app = app
        self._max_idle_time = max_idle_time
        self._busy = busy
        self._accepted = 0

    @property
    def accepted(self) -> int:
        """Number of connections accepted so far."""
        return self._accepted

    async def serve(self) -> None:
        """Accept until the idle timeout expires (or forever without one)."""
        runner = web.AppRunner(self._app, access_log=None)
        await runner.setup()
        server = runner.server
        assert server is not None
        loop = asyncio.get_running_loop()
        logger.info(
            "Listening for webhooks (max_idle_time=%s)",
            f"{self._max_idle_time:g}s" if self._max_idle_time is not None else "none",
        )
        try:
            while True:
                try:
                    conn = await self._accept(loop)
                except TimeoutError:
                    if self._busy is not None and self._busy():
                        logger.debug("Idle timeout reached while commands run; still accepting")
                        continue
                    logger.info("Timed out waiting for new connection. Exiting.")
                    return
                except OSError:
                    logger.exception("Accepting connection failed")
                    await asyncio.sleep(_ACCEPT_ERROR_BACKOFF)
                    continue

                self._accepted += 1
                try:
                    await loop.connect_accepted_socket(server, conn)
                except OSError:
                    logger.exception("Error serving connection")
                    conn.close()
        finally:
            await runner.cleanup()

    async def _accept(self, loop: asyncio.AbstractEventLoop) -> socket.socket:
        async with asyncio.timeout(self._max_idle_time):
            conn, _ = await loop.sock_accept(self._listener)
        return conn
