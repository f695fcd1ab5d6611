"""Shared fixtures: an echo server and an in-process paramiko bastion."""

from __future__ import annotations

import socket
import socketserver
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterator

import paramiko
import pytest

BASTION_USER = "tester"
BASTION_PASSWORD = "hunter2"


class _EchoHandler(socketserver.BaseRequestHandler):
    def handle(self) -> None:
        while True:
            try:
                data = self.request.recv(4096)
            except OSError:
                return
            if not data:
                return
            self.request.sendall(data)


class _EchoServer(socketserver.ThreadingTCPServer):
    daemon_threads = True
    allow_reuse_address = True


@pytest.fixture
def echo_server() -> Iterator[tuple[str, int]]:
    server = _EchoServer(("127.0.0.1", 0), _EchoHandler)
    thread = threading.Thread(target=server.serve_forever, name="echo-server", daemon=True)
    thread.start()
    try:
        yield server.server_address[0], server.server_address[1]
    finally:
        server.shutdown()
        server.server_close()


@pytest.fixture(scope="session")
def host_key() -> paramiko.RSAKey:
    return paramiko.RSAKey.generate(2048)


@pytest.fixture(scope="session")
def client_key() -> paramiko.RSAKey:
    return paramiko.RSAKey.generate(2048)


@pytest.fixture
def client_key_file(tmp_path: Path, client_key: paramiko.RSAKey) -> Path:
    path = tmp_path / "id_rsa"
    client_key.write_private_key_file(str(path))
    return path


class _BastionInterface(paramiko.ServerInterface):
    def __init__(self, authorized_key: paramiko.PKey) -> None:
        self._authorized_key = authorized_key
        self._targets: dict[int, socket.socket] = {}
        self._lock = threading.Lock()

    def get_allowed_auths(self, username: str) -> str:
        return "publickey,password"

    def check_auth_password(self, username: str, password: str) -> int:
        if username == BASTION_USER and password == BASTION_PASSWORD:
            return paramiko.AUTH_SUCCESSFUL
        return paramiko.AUTH_FAILED

    def check_auth_publickey(self, username: str, key: paramiko.PKey) -> int:
        if username == BASTION_USER and key.asbytes() == self._authorized_key.asbytes():
            return paramiko.AUTH_SUCCESSFUL
        return paramiko.AUTH_FAILED

    def check_channel_request(self, kind: str, chanid: int) -> int:
        return paramiko.OPEN_FAILED_ADMINISTRATIVELY_PROHIBITED

    def check_channel_direct_tcpip_request(self, chanid: int, origin, destination) -> int:
        try:
            target = socket.create_connection(destination, timeout=2)
        except OSError:
            return paramiko.OPEN_FAILED_CONNECT_FAILED
        target.settimeout(None)
        with self._lock:
            self._targets[chanid] = target
        return paramiko.OPEN_SUCCEEDED

    def take_target(self, chanid: int) -> socket.socket | None:
        with self._lock:
            return self._targets.pop(chanid, None)


def _pipe(src, dst) -> None:
    try:
        while True:
            data = src.recv(4096)
            if not data:
                break
            dst.sendall(data)
    except (OSError, EOFError):
        pass
    finally:
        for end in (src, dst):
            try:
                end.close()
            except OSError:
                pass


@dataclass
class Bastion:
    """A real SSH server that only allows direct-tcpip channels."""

    host_key: paramiko.PKey
    authorized_key: paramiko.PKey
    listener: socket.socket = field(init=False)
    transports: list[paramiko.Transport] = field(default_factory=list)
    channels_opened: int = 0

    def __post_init__(self) -> None:
        self.listener = socket.create_server(("127.0.0.1", 0))
        self.listener.settimeout(0.2)
        self._stopping = threading.Event()
        self._thread = threading.Thread(target=self._serve, name="bastion", daemon=True)
        self._thread.start()

    @property
    def address(self) -> tuple[str, int]:
        host, port = self.listener.getsockname()[:2]
        return host, port

    def stop(self) -> None:
        self._stopping.set()
        self.listener.close()
        self._thread.join(2)
        for transport in self.transports:
            transport.close()

    def _serve(self) -> None:
        while not self._stopping.is_set():
            try:
                client, _ = self.listener.accept()
            except TimeoutError:
                continue
            except OSError:
                return
            client.settimeout(None)
            threading.Thread(target=self._handle, args=(client,), daemon=True).start()

    def _handle(self, client: socket.socket) -> None:
        transport = paramiko.Transport(client)
        transport.add_server_key(self.host_key)
        interface = _BastionInterface(self.authorized_key)
        self.transports.append(transport)
        try:
            transport.start_server(server=interface)
        except (paramiko.SSHException, EOFError, OSError):
            return
        while transport.is_active() and not self._stopping.is_set():
            channel = transport.accept(0.2)
            if channel is None:
                continue
            target = interface.take_target(channel.get_id())
            if target is None:
                channel.close()
                continue
            self.channels_opened += 1
            threading.Thread(target=_pipe, args=(channel, target), daemon=True).start()
            threading.Thread(target=_pipe, args=(target, channel), daemon=True).start()


@pytest.fixture
def bastion(host_key: paramiko.RSAKey, client_key: paramiko.RSAKey) -> Iterator[Bastion]:
    server = Bastion(host_key=host_key, authorized_key=client_key)
    try:
        yield server
    finally:
        server.stop()


@pytest.fixture
def unused_port() -> int:
    """A port nothing is listening on."""

    with socket.create_server(("127.0.0.1", 0)) as probe:
        return probe.getsockname()[1]

