"""Connection facade: direct or tunneled PostgreSQL access behind one handle."""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass
from enum import Enum
from typing import Any, Coroutine, Mapping, TypeVar

import asyncpg

from .config import Profile, TunnelSettings, connect_kwargs, local_profile
from .connector import TunnelConnector, TunnelEventLoop
from .credentials import resolve_auth_methods
from .errors import TunnelError
from .forwarder import PortForwarder
from .query import QueryResult, run_statement
from .tunnel import TunnelSession, open_tunnel

LOG = logging.getLogger(__name__)

T = TypeVar("T")

_PING_QUERY = "SELECT 1"


class ConnectionState(str, Enum):
    UNCONNECTED = "unconnected"
    AUTHENTICATING = "authenticating"
    DIALING = "dialing"
    VERIFYING = "verifying"
    READY = "ready"
    FAILED = "failed"
    CLOSED = "closed"


class ConnectionMode(str, Enum):
    DIRECT = "direct"
    TUNNEL = "tunnel"


@dataclass(frozen=True, slots=True)
class ConnectionReport:
    """Outcome of a successful connection test."""

    profile: str
    mode: ConnectionMode
    latency_ms: int
    elapsed_ms: int


class ConnectionHandle:
    """A ready asyncpg pool plus every resource it depends on.

    The pool lives on a dedicated event loop thread; the synchronous
    methods below submit work to it. In tunnel mode that loop dials through
    the SSH session, and an optional port forwarder exposes the database to
    external processes on ``localhost``.
    """

    def __init__(self, profile: Profile, settings: TunnelSettings | None = None) -> None:
        self._profile = profile
        self._settings = settings or TunnelSettings()
        self._mode = ConnectionMode.TUNNEL if profile.ssh.enabled else ConnectionMode.DIRECT
        self._state = ConnectionState.UNCONNECTED
        self._lock = threading.Lock()
        self._released = False
        self._session: TunnelSession | None = None
        self._forwarder: PortForwarder | None = None
        self._pool: asyncpg.Pool | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._loop_thread: threading.Thread | None = None

    @property
    def profile(self) -> Profile:
        return self._profile

    @property
    def settings(self) -> TunnelSettings:
        return self._settings

    @property
    def mode(self) -> ConnectionMode:
        return self._mode

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def session(self) -> TunnelSession | None:
        return self._session

    @property
    def forwarder(self) -> PortForwarder | None:
        return self._forwarder

    @property
    def pool(self) -> asyncpg.Pool:
        self._require_ready()
        assert self._pool is not None
        return self._pool

    @property
    def external_address(self) -> str | None:
        """Address an external tool should use, or None if not exposed."""

        if self._mode is ConnectionMode.DIRECT:
            host, port = self._profile.address
            return f"{host}:{port}"
        if self._forwarder is not None:
            return self._forwarder.address
        return None

    def external_profile(self) -> Profile:
        """Profile pointing external tools at the forwarded local port."""

        if self._mode is ConnectionMode.DIRECT:
            return self._profile
        if self._forwarder is None or self._forwarder.port is None:
            raise TunnelError("Connection was not opened with a local forwarder")
        return local_profile(self._profile, self._forwarder.port)

    def open(self, *, expose: bool = False, environ: Mapping[str, str] | None = None) -> ConnectionHandle:
        """Walk the connection state machine; any failure releases everything."""

        if self._state is not ConnectionState.UNCONNECTED:
            raise TunnelError(f"Connection already {self._state.value}")
        try:
            self._establish(expose=expose, environ=environ)
        except BaseException:
            self._state = ConnectionState.FAILED
            self._release()
            raise
        self._state = ConnectionState.READY
        LOG.info("Connected to PostgreSQL (%s) for profile '%s'", self._mode.value, self._profile.name)
        return self

    def ping(self) -> int:
        """Round-trip a trivial query; returns latency in milliseconds."""

        self._require_ready()
        return self._run(self._ping())

    def fetch(self, query: str, *args: object) -> list[asyncpg.Record]:
        return self._run(self.pool.fetch(query, *args))

    def fetchval(self, query: str, *args: object) -> Any:
        return self._run(self.pool.fetchval(query, *args))

    def execute(self, query: str, *args: object) -> str:
        return self._run(self.pool.execute(query, *args))

    def run(self, sql: str) -> QueryResult:
        """Run one statement and return a normalized result."""

        return self._run(self._run_statement(sql))

    def close(self) -> None:
        """Release pool, forwarder, session, then loop; idempotent."""

        with self._lock:
            if self._state is not ConnectionState.FAILED:
                self._state = ConnectionState.CLOSED
        self._release()

    def __enter__(self) -> ConnectionHandle:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"ConnectionHandle({self._profile.name!r}, {self._mode.value}, {self._state.value})"

    def _establish(self, *, expose: bool, environ: Mapping[str, str] | None) -> None:
        settings = self._settings
        if self._mode is ConnectionMode.TUNNEL:
            self._state = ConnectionState.AUTHENTICATING
            ssh = self._profile.ssh
            methods = resolve_auth_methods(ssh, environ)
            self._session = open_tunnel(
                ssh.address,
                ssh.user or "",
                methods,
                settings.ssh_timeout_for(ssh),
                keepalive_interval=settings.keepalive_interval,
                known_hosts=ssh.known_hosts,
            )
            if expose:
                self._forwarder = PortForwarder(
                    self._session,
                    self._profile.address,
                    poll_interval=settings.forward_poll_interval,
                    buffer_size=settings.relay_buffer_size,
                    dial_timeout=settings.dial_timeout,
                )
                self._forwarder.start()
            connector = TunnelConnector(
                self._session,
                timeout=settings.dial_timeout,
                buffer_size=settings.relay_buffer_size,
            )
            self._start_loop(TunnelEventLoop(connector))
        else:
            LOG.info("Connecting directly to %s:%s", *self._profile.address)
            self._start_loop(asyncio.new_event_loop())

        self._state = ConnectionState.DIALING
        self._pool = self._run(self._create_pool())
        self._state = ConnectionState.VERIFYING
        self._run(self._ping())

    def _start_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        self._loop = loop
        self._loop_thread = threading.Thread(
            target=loop.run_forever,
            name=f"pgtunnel-{self._profile.name}",
            daemon=True,
        )
        self._loop_thread.start()

    async def _create_pool(self) -> asyncpg.Pool:
        settings = self._settings
        return await asyncpg.create_pool(
            min_size=settings.pool_min_size,
            max_size=settings.pool_max_size,
            max_inactive_connection_lifetime=settings.pool_max_inactive_lifetime,
            timeout=settings.connect_timeout,
            **connect_kwargs(self._profile),
        )

    async def _ping(self) -> int:
        assert self._pool is not None
        started = time.perf_counter()
        await asyncio.wait_for(self._pool.fetchval(_PING_QUERY), timeout=self._settings.ping_timeout)
        return int((time.perf_counter() - started) * 1000)

    async def _run_statement(self, sql: str) -> QueryResult:
        async with self.pool.acquire() as conn:
            return await run_statement(conn, sql)

    def _run(self, coro: Coroutine[Any, Any, T], timeout: float | None = None) -> T:
        if self._loop is None or self._loop.is_closed():
            coro.close()
            raise TunnelError("Connection event loop is not running")
        future = asyncio.run_coroutine_threadsafe(coro, self._loop)
        try:
            return future.result(timeout)
        except FutureTimeout:
            future.cancel()
            raise

    def _require_ready(self) -> None:
        if self._state not in (ConnectionState.READY, ConnectionState.VERIFYING):
            raise TunnelError(f"Connection is not ready ({self._state.value})")

    def _release(self) -> None:
        with self._lock:
            if self._released:
                return
            self._released = True

        if self._pool is not None:
            pool = self._pool
            self._pool = None
            try:
                self._run(pool.close(), timeout=self._settings.close_timeout)
            except Exception as exc:
                LOG.warning("Terminating pool after failed close: %s", exc)
                if self._loop is not None and not self._loop.is_closed():
                    self._loop.call_soon_threadsafe(pool.terminate)

        if self._forwarder is not None:
            self._forwarder.stop()

        if self._session is not None:
            self._session.close()

        if self._loop is not None:
            loop = self._loop
            loop.call_soon_threadsafe(loop.stop)
            if self._loop_thread is not None:
                self._loop_thread.join(self._settings.close_timeout)
            if not loop.is_running():
                loop.close()


def connect(
    profile: Profile,
    *,
    settings: TunnelSettings | None = None,
    expose: bool = False,
    environ: Mapping[str, str] | None = None,
) -> ConnectionHandle:
    """Return a ready handle for `profile`, tunneled when its SSH block is enabled.

    With ``expose=True`` a tunneled handle also listens on an ephemeral
    ``localhost`` port for external tools (see ``external_address``).
    """

    return ConnectionHandle(profile, settings).open(expose=expose, environ=environ)


def check_connection(profile: Profile, *, settings: TunnelSettings | None = None) -> ConnectionReport:
    """Connect, verify, and disconnect; raises on any failure."""

    started = time.perf_counter()
    LOG.info("Testing connection for profile '%s'", profile.name)
    with connect(profile, settings=settings) as handle:
        latency_ms = handle.ping()
        mode = handle.mode
    elapsed_ms = int((time.perf_counter() - started) * 1000)
    LOG.info("Connection verified (%s mode) in %d ms", mode.value, elapsed_ms)
    return ConnectionReport(profile=profile.name, mode=mode, latency_ms=latency_ms, elapsed_ms=elapsed_ms)


__all__ = [
    "ConnectionHandle",
    "ConnectionMode",
    "ConnectionReport",
    "ConnectionState",
    "check_connection",
    "connect",
]
