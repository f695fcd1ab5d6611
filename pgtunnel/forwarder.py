"""Local TCP endpoints relayed through a tunnel session."""

from __future__ import annotations

import logging
import socket
import threading
from typing import Callable, Protocol

from .errors import ListenerBindFailed, RelayIOError, TunnelError
from .tunnel import Address

LOG = logging.getLogger(__name__)

DEFAULT_BUFFER_SIZE = 32 * 1024


class Stream(Protocol):
    """Byte stream shared by sockets and SSH channels."""

    def recv(self, size: int) -> bytes: ...

    def sendall(self, data: bytes) -> None: ...

    def shutdown(self, how: int) -> None: ...

    def close(self) -> None: ...


class Dialer(Protocol):
    """Anything that can open a remote stream (normally a TunnelSession)."""

    def dial_remote(self, address: Address, timeout: float | None = None) -> Stream: ...

    def close(self) -> None: ...


class RelayPair:
    """Copies bytes in both directions between two streams.

    Each direction runs on its own thread. Whichever side ends first, by
    EOF or error, closes both ends so neither descriptor is leaked.
    """

    def __init__(
        self,
        local: Stream,
        remote: Stream,
        *,
        buffer_size: int = DEFAULT_BUFFER_SIZE,
        name: str = "pgtunnel-relay",
        on_close: Callable[[RelayPair], None] | None = None,
    ) -> None:
        self._local = local
        self._remote = remote
        self._buffer_size = buffer_size
        self._name = name
        self._on_close = on_close
        self._lock = threading.Lock()
        self._closed = False
        self._threads: list[threading.Thread] = []

    @property
    def name(self) -> str:
        return self._name

    @property
    def closed(self) -> bool:
        return self._closed

    def start(self) -> None:
        for src, dst, direction in (
            (self._local, self._remote, "out"),
            (self._remote, self._local, "in"),
        ):
            thread = threading.Thread(
                target=self._pump,
                args=(src, dst, direction),
                name=f"{self._name}-{direction}",
                daemon=True,
            )
            self._threads.append(thread)
            thread.start()

    def join(self, timeout: float | None = None) -> None:
        for thread in self._threads:
            thread.join(timeout)

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
        for end in (self._local, self._remote):
            _close_stream(end)
        if self._on_close is not None:
            self._on_close(self)

    def _pump(self, src: Stream, dst: Stream, direction: str) -> None:
        try:
            while True:
                data = src.recv(self._buffer_size)
                if not data:
                    break
                dst.sendall(data)
        except (OSError, EOFError, TunnelError) as exc:
            if not self._closed:
                error = RelayIOError(f"{self._name} ({direction}) failed: {exc}")
                LOG.debug("%s", error)
        finally:
            self.close()


class PortForwarder:
    """Expose a remote address as `localhost:<port>` for external processes."""

    def __init__(
        self,
        session: Dialer,
        remote_address: Address,
        *,
        host: str = "localhost",
        poll_interval: float = 0.5,
        buffer_size: int = DEFAULT_BUFFER_SIZE,
        dial_timeout: float | None = None,
    ) -> None:
        self._session = session
        self._remote = remote_address
        self._host = host
        self._poll_interval = poll_interval
        self._buffer_size = buffer_size
        self._dial_timeout = dial_timeout
        self._listener: socket.socket | None = None
        self._thread: threading.Thread | None = None
        self._stopping = threading.Event()
        self._lock = threading.Lock()
        self._pairs: set[RelayPair] = set()
        self._port: int | None = None

    @property
    def port(self) -> int | None:
        return self._port

    @property
    def address(self) -> str | None:
        """`host:port` string external tools should connect to."""

        if self._port is None:
            return None
        return f"{self._host}:{self._port}"

    @property
    def remote_address(self) -> Address:
        return self._remote

    @property
    def active(self) -> bool:
        return self._thread is not None and not self._stopping.is_set()

    @property
    def pairs(self) -> tuple[RelayPair, ...]:
        with self._lock:
            return tuple(self._pairs)

    def start(self) -> int:
        """Bind an ephemeral port and start accepting; returns the port."""

        if self._thread is not None:
            raise RuntimeError("Port forwarder already started")
        port = _probe_port(self._host)
        try:
            listener = socket.create_server((self._host, port))
        except OSError as exc:
            raise ListenerBindFailed(f"Failed to bind {self._host}:{port}: {exc}") from exc
        listener.settimeout(self._poll_interval)
        self._listener = listener
        self._port = port
        self._thread = threading.Thread(
            target=self._accept_loop,
            name=f"pgtunnel-forward-{port}",
            daemon=True,
        )
        self._thread.start()
        LOG.info("Forwarding %s -> %s:%s", self.address, *self._remote)
        return port

    def stop(self) -> None:
        """Stop accepting and close the session; open pairs drain on their own."""

        with self._lock:
            if self._stopping.is_set():
                return
            self._stopping.set()
        if self._listener is not None:
            self._listener.close()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(self._poll_interval * 4)
        self._session.close()
        LOG.info("Port forwarder on %s stopped", self.address)

    def __enter__(self) -> PortForwarder:
        if self._thread is None:
            self.start()
        return self

    def __exit__(self, *exc: object) -> None:
        self.stop()

    def _accept_loop(self) -> None:
        assert self._listener is not None
        while not self._stopping.is_set():
            try:
                local, peer = self._listener.accept()
            except TimeoutError:
                continue
            except OSError as exc:
                if not self._stopping.is_set():
                    LOG.warning("Port forwarder on %s stopped accepting: %s", self.address, exc)
                break
            # A stalled channel-open blocks only its own client.
            threading.Thread(
                target=self._serve,
                args=(local, peer),
                name=f"pgtunnel-dial-{self._port}-{peer[1]}",
                daemon=True,
            ).start()

    def _serve(self, local: socket.socket, peer: Address) -> None:
        local.settimeout(None)
        try:
            remote = self._session.dial_remote(self._remote, self._dial_timeout)
        except TunnelError as exc:
            LOG.warning("Dropping connection from %s:%s: %s", peer[0], peer[1], exc)
            _close_stream(local)
            return
        if self._stopping.is_set():
            _close_stream(remote)
            _close_stream(local)
            return
        pair = RelayPair(
            local,
            remote,
            buffer_size=self._buffer_size,
            name=f"pgtunnel-relay-{self._port}-{peer[1]}",
            on_close=self._forget,
        )
        with self._lock:
            self._pairs.add(pair)
        LOG.debug("Relaying %s:%s -> %s:%s", peer[0], peer[1], *self._remote)
        pair.start()

    def _forget(self, pair: RelayPair) -> None:
        with self._lock:
            self._pairs.discard(pair)


def _probe_port(host: str) -> int:
    """Ask the OS for a free port, then release it for the real listener."""

    try:
        with socket.create_server((host, 0)) as probe:
            return probe.getsockname()[1]
    except OSError as exc:
        raise ListenerBindFailed(f"No ephemeral port available on {host}: {exc}") from exc


def _close_stream(stream: Stream) -> None:
    # shutdown wakes a recv blocked on another thread; close alone may not.
    try:
        stream.shutdown(socket.SHUT_RDWR)
    except (OSError, EOFError):
        pass
    try:
        stream.close()
    except OSError as exc:  # pragma: no cover - best effort cleanup
        LOG.debug("Ignoring close error: %s", exc)


__all__ = ["DEFAULT_BUFFER_SIZE", "PortForwarder", "RelayPair"]
