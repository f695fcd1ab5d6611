"""Tests for routing driver connections through the tunnel."""

from __future__ import annotations

import asyncio
import socket
import threading
import time

import pytest

from conftest import BASTION_PASSWORD, BASTION_USER, Bastion
from pgtunnel.connector import TunnelConnector, TunnelEventLoop
from pgtunnel.credentials import PasswordAuth
from pgtunnel.errors import DialTimeout
from pgtunnel.tunnel import open_tunnel


class _PairConnector:
    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.calls: list[tuple[str, int]] = []
        self.remotes: list[socket.socket] = []

    def dial(self, host: str, port: int) -> socket.socket:
        self.calls.append((host, port))
        if self.error is not None:
            raise self.error
        ours, theirs = socket.socketpair()
        self.remotes.append(theirs)
        return ours


class _SlowConnector(_PairConnector):
    def __init__(self, delay: float) -> None:
        super().__init__()
        self.delay = delay
        self.handed: list[socket.socket] = []
        self.finished = threading.Event()

    def dial(self, host: str, port: int) -> socket.socket:
        time.sleep(self.delay)
        sock = super().dial(host, port)
        self.handed.append(sock)
        self.finished.set()
        return sock


def _run(loop: asyncio.AbstractEventLoop, coro):
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.run_until_complete(loop.shutdown_default_executor())
        loop.close()


def test_loop_dials_host_and_port_through_connector() -> None:
    connector = _PairConnector()
    loop = TunnelEventLoop(connector)  # type: ignore[arg-type]

    async def _scenario() -> bytes:
        reader, writer = await asyncio.open_connection("db.internal", 5432)
        writer.write(b"startup")
        await writer.drain()
        remote = connector.remotes[0]
        received = await asyncio.get_running_loop().run_in_executor(None, remote.recv, 16)
        remote.sendall(b"ready")
        reply = await reader.readexactly(5)
        writer.close()
        return received + b"|" + reply

    assert _run(loop, _scenario()) == b"startup|ready"
    assert connector.calls == [("db.internal", 5432)]
    assert loop.connector is connector


def test_loop_passes_explicit_sockets_through() -> None:
    connector = _PairConnector()
    loop = TunnelEventLoop(connector)  # type: ignore[arg-type]
    ours, theirs = socket.socketpair()

    async def _scenario() -> None:
        transport, _ = await asyncio.get_running_loop().create_connection(asyncio.Protocol, sock=ours)
        transport.close()

    _run(loop, _scenario())
    theirs.close()

    assert connector.calls == []


def test_dial_errors_propagate_unchanged() -> None:
    connector = _PairConnector(error=DialTimeout("too slow"))
    loop = TunnelEventLoop(connector)  # type: ignore[arg-type]

    with pytest.raises(DialTimeout):
        _run(loop, asyncio.open_connection("db.internal", 5432))
    assert connector.calls == [("db.internal", 5432)]


def test_abandoned_dial_closes_its_late_socket() -> None:
    connector = _SlowConnector(delay=0.3)
    loop = TunnelEventLoop(connector)  # type: ignore[arg-type]

    with pytest.raises(TimeoutError):
        _run(loop, asyncio.wait_for(asyncio.open_connection("db.internal", 5432), 0.05))

    assert connector.finished.wait(2)
    deadline = time.monotonic() + 2
    while connector.handed[0].fileno() != -1 and time.monotonic() < deadline:
        time.sleep(0.01)
    assert connector.handed[0].fileno() == -1
    assert connector.remotes[0].recv(16) == b""


def test_connector_bridges_channel_to_plain_socket(bastion: Bastion, echo_server: tuple[str, int]) -> None:
    session = open_tunnel(bastion.address, BASTION_USER, [PasswordAuth(BASTION_PASSWORD)], 5)
    connector = TunnelConnector(session, timeout=5)
    try:
        sock = connector.dial(*echo_server)
        sock.settimeout(5)
        sock.sendall(b"through the bastion")
        received = b""
        while len(received) < 19:
            chunk = sock.recv(64)
            if not chunk:
                break
            received += chunk
        sock.close()
    finally:
        session.close()

    assert received == b"through the bastion"
    assert connector.session is session
    assert connector.timeout == 5
