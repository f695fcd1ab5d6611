"""Authenticated SSH sessions that dial remote addresses through a bastion."""

from __future__ import annotations

import logging
import os
import socket
import threading
from concurrent.futures import CancelledError, Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Sequence

import paramiko

from .credentials import AuthMethod
from .errors import (
    AuthRejected,
    DialFailed,
    DialTimeout,
    HandshakeFailed,
    HostKeyMismatch,
    SessionClosed,
)

LOG = logging.getLogger(__name__)

Address = tuple[str, int]

_ORIGIN: Address = ("127.0.0.1", 0)


class TunnelSession:
    """One live, authenticated SSH connection to a bastion.

    Channels are opened over the shared transport; paramiko serialises
    channel-open requests internally, so concurrent dialers need no extra
    locking. Closing the session closes every channel opened through it.
    """

    def __init__(
        self,
        transport: paramiko.Transport,
        address: Address,
        *,
        keepalive_interval: int = 0,
    ) -> None:
        self._transport = transport
        self._address = address
        self._keepalive_interval = keepalive_interval
        self._lock = threading.Lock()
        self._closed = False
        self._dialer = ThreadPoolExecutor(thread_name_prefix="pgtunnel-dial")
        if keepalive_interval > 0:
            transport.set_keepalive(keepalive_interval)

    @property
    def address(self) -> Address:
        """Bastion address this session is connected to."""

        return self._address

    @property
    def keepalive_interval(self) -> int:
        return self._keepalive_interval

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def is_active(self) -> bool:
        return not self._closed and self._transport.is_active()

    def dial_remote(self, address: Address, timeout: float | None = None) -> paramiko.Channel:
        """Open a direct-tcpip channel to `address` as seen from the bastion."""

        self._ensure_open()
        host, port = address
        try:
            channel = self._transport.open_channel(
                "direct-tcpip",
                (host, port),
                _ORIGIN,
                timeout=timeout,
            )
        except paramiko.ChannelException as exc:
            raise DialFailed(f"Bastion refused channel to {host}:{port}: {exc}") from exc
        except (paramiko.SSHException, EOFError, OSError) as exc:
            if self._closed:
                raise SessionClosed("SSH session closed while dialing") from exc
            raise DialFailed(f"Failed to open channel to {host}:{port}: {exc}") from exc
        LOG.debug("Opened channel to %s:%s via %s:%s", host, port, *self._address)
        return channel

    def dial_remote_timeout(self, address: Address, timeout: float) -> paramiko.Channel:
        """Dial with a deadline; a channel that arrives late is closed, not returned."""

        self._ensure_open()
        try:
            future = self._dialer.submit(self.dial_remote, address, timeout)
        except RuntimeError as exc:
            raise SessionClosed("SSH session is closed") from exc
        try:
            return future.result(timeout=timeout)
        except CancelledError as exc:
            raise SessionClosed("SSH session closed while dialing") from exc
        except FutureTimeout:
            future.add_done_callback(_discard_late_channel)
            host, port = address
            raise DialTimeout(f"Dial to {host}:{port} timed out after {timeout}s") from None

    def close(self) -> None:
        """Release the transport; safe to call repeatedly and concurrently."""

        with self._lock:
            if self._closed:
                return
            self._closed = True
        self._dialer.shutdown(wait=False, cancel_futures=True)
        try:
            self._transport.close()
        except Exception as exc:  # pragma: no cover - best effort cleanup
            LOG.warning("Error closing SSH transport: %s", exc)
        LOG.info("SSH session to %s:%s closed", *self._address)

    def __enter__(self) -> TunnelSession:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def __repr__(self) -> str:
        state = "closed" if self._closed else "open"
        host, port = self._address
        return f"TunnelSession({host}:{port}, {state})"

    def _ensure_open(self) -> None:
        if self._closed:
            raise SessionClosed("SSH session is closed")


def open_tunnel(
    address: Address,
    user: str,
    methods: Sequence[AuthMethod],
    timeout: float,
    *,
    keepalive_interval: int = 0,
    known_hosts: str | None = None,
) -> TunnelSession:
    """Connect to the bastion, verify it, and authenticate with `methods` in order."""

    host, port = address
    LOG.info("Opening SSH session to %s@%s:%s", user, host, port)
    try:
        sock = socket.create_connection((host, port), timeout=timeout)
    except OSError as exc:
        raise HandshakeFailed(f"Failed SSH connection to {host}:{port}: {exc}") from exc

    transport = paramiko.Transport(sock)
    transport.banner_timeout = timeout
    transport.auth_timeout = timeout
    try:
        try:
            transport.start_client(timeout=timeout)
        except (paramiko.SSHException, EOFError, OSError) as exc:
            raise HandshakeFailed(f"SSH handshake with {host}:{port} failed: {exc}") from exc
        _verify_host_key(transport, host, port, known_hosts)
        _authenticate(transport, user, methods)
    except BaseException:
        transport.close()
        raise

    LOG.info("SSH session to %s:%s authenticated as %s", host, port, user)
    return TunnelSession(transport, (host, port), keepalive_interval=keepalive_interval)


def _authenticate(transport: paramiko.Transport, user: str, methods: Sequence[AuthMethod]) -> None:
    rejected: list[str] = []
    for method in methods:
        try:
            if method.authenticate(transport, user):
                LOG.debug("Authenticated %s with %s", user, method.name)
                return
        except paramiko.AuthenticationException as exc:
            rejected.append(f"{method.name}: {exc}")
            continue
        except (paramiko.SSHException, EOFError, OSError) as exc:
            raise HandshakeFailed(f"SSH connection lost during authentication: {exc}") from exc
        rejected.append(f"{method.name}: partial")
    detail = "; ".join(rejected) or "no methods offered"
    raise AuthRejected(f"SSH authentication rejected for {user} ({detail})")


def _verify_host_key(
    transport: paramiko.Transport,
    host: str,
    port: int,
    known_hosts: str | None,
) -> None:
    key = transport.get_remote_server_key()
    if not known_hosts:
        # Any host key is accepted unless a known_hosts file is configured.
        LOG.debug("Accepting %s host key %s for %s without verification", key.get_name(), key.fingerprint, host)
        return
    path = os.path.expanduser(known_hosts)
    try:
        entries = paramiko.HostKeys(path)
    except OSError as exc:
        raise HandshakeFailed(f"Cannot read known_hosts file {path}: {exc}") from exc
    lookup = host if port == 22 else f"[{host}]:{port}"
    known = entries.lookup(lookup)
    expected = known.get(key.get_name()) if known is not None else None
    if expected is None or expected.asbytes() != key.asbytes():
        raise HostKeyMismatch(f"Host key for {lookup} ({key.fingerprint}) not found in {path}")


def _discard_late_channel(future: Future[paramiko.Channel]) -> None:
    if future.cancelled() or future.exception() is not None:
        return
    channel = future.result()
    LOG.debug("Closing channel that arrived after its dial deadline")
    channel.close()


__all__ = ["Address", "TunnelSession", "open_tunnel"]
