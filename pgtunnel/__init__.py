"""PostgreSQL access through SSH bastions, in-process and for external tools."""

from __future__ import annotations

from .config import Profile, SSHConfig, TunnelSettings, build_dsn, load_settings, local_profile
from .connections import (
    ConnectionHandle,
    ConnectionMode,
    ConnectionReport,
    ConnectionState,
    check_connection,
    connect,
)
from .errors import (
    AuthRejected,
    DialFailed,
    DialTimeout,
    HandshakeFailed,
    HostKeyMismatch,
    InvalidKeyMaterial,
    ListenerBindFailed,
    NoAuthMethodAvailable,
    RelayIOError,
    SessionClosed,
    TunnelError,
)

__version__ = "0.1.0"

__all__ = [
    "AuthRejected",
    "ConnectionHandle",
    "ConnectionMode",
    "ConnectionReport",
    "ConnectionState",
    "DialFailed",
    "DialTimeout",
    "HandshakeFailed",
    "HostKeyMismatch",
    "InvalidKeyMaterial",
    "ListenerBindFailed",
    "NoAuthMethodAvailable",
    "Profile",
    "RelayIOError",
    "SSHConfig",
    "SessionClosed",
    "TunnelError",
    "TunnelSettings",
    "__version__",
    "check_connection",
    "connect",
    "build_dsn",
    "load_settings",
    "local_profile",
]
