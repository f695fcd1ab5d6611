"""Route asyncpg's own connection attempts through a tunnel session."""

from __future__ import annotations

import asyncio
import logging
import socket
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable

from .forwarder import DEFAULT_BUFFER_SIZE, RelayPair
from .tunnel import TunnelSession

LOG = logging.getLogger(__name__)


class TunnelConnector:
    """Dial the database through the bastion and hand back a plain socket.

    The channel is bridged to one end of a socket pair so the driver sees
    an ordinary stream socket; TLS, if requested, is negotiated by the
    driver over that socket. Failures propagate unchanged and are never
    retried here.
    """

    def __init__(
        self,
        session: TunnelSession,
        *,
        timeout: float = 10.0,
        buffer_size: int = DEFAULT_BUFFER_SIZE,
    ) -> None:
        self._session = session
        self._timeout = timeout
        self._buffer_size = buffer_size

    @property
    def session(self) -> TunnelSession:
        return self._session

    @property
    def timeout(self) -> float:
        return self._timeout

    def dial(self, host: str, port: int) -> socket.socket:
        channel = self._session.dial_remote_timeout((host, port), self._timeout)
        driver_end, bridge_end = socket.socketpair()
        RelayPair(
            bridge_end,
            channel,
            buffer_size=self._buffer_size,
            name=f"pgtunnel-driver-{host}:{port}",
        ).start()
        LOG.debug("Driver connection to %s:%s bridged through %r", host, port, self._session)
        return driver_end


class TunnelEventLoop(asyncio.SelectorEventLoop):
    """Event loop whose TCP connects are dialled through a `TunnelConnector`.

    asyncpg (and its pool) open every server connection, including TLS
    upgrades and cancel requests, via ``loop.create_connection(factory,
    host, port)``. Calls that already carry a socket pass straight through.
    A dial abandoned by its caller (for example on asyncpg's connect
    timeout) still finishes on the dial thread; its socket is then closed.
    """

    def __init__(self, connector: TunnelConnector) -> None:
        super().__init__()
        self._connector = connector
        self._dialer = ThreadPoolExecutor(thread_name_prefix="pgtunnel-connect")

    @property
    def connector(self) -> TunnelConnector:
        return self._connector

    async def create_connection(  # type: ignore[override]
        self,
        protocol_factory: Callable[[], asyncio.BaseProtocol],
        host: str | None = None,
        port: int | None = None,
        **kwargs: Any,
    ) -> tuple[asyncio.Transport, asyncio.BaseProtocol]:
        if host is None or kwargs.get("sock") is not None:
            return await super().create_connection(protocol_factory, host, port, **kwargs)
        dial = self._dialer.submit(self._connector.dial, host, int(port or 0))
        try:
            sock = await asyncio.wrap_future(dial, loop=self)
        except asyncio.CancelledError:
            dial.add_done_callback(_close_late_socket)
            raise
        try:
            return await super().create_connection(protocol_factory, sock=sock, **kwargs)
        except BaseException:
            sock.close()
            raise

    def close(self) -> None:
        self._dialer.shutdown(wait=False, cancel_futures=True)
        super().close()


def _close_late_socket(future: Future[socket.socket]) -> None:
    if future.cancelled() or future.exception() is not None:
        return
    LOG.debug("Closing driver socket that arrived after its connect was abandoned")
    future.result().close()


__all__ = ["TunnelConnector", "TunnelEventLoop"]
