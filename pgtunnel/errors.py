"""Error taxonomy for the tunnel layer."""

from __future__ import annotations


class TunnelError(RuntimeError):
    """Base class for every error raised by pgtunnel."""


class CredentialError(TunnelError):
    """Raised when SSH credentials cannot be turned into auth methods."""


class NoAuthMethodAvailable(CredentialError):
    """No usable SSH credential (agent, key, or password) was found."""


class InvalidKeyMaterial(CredentialError):
    """A configured private key is unreadable or cannot be parsed."""


class HandshakeFailed(TunnelError):
    """The bastion could not be reached or SSH negotiation failed."""


class HostKeyMismatch(HandshakeFailed):
    """The bastion presented a host key not listed in known_hosts."""


class AuthRejected(TunnelError):
    """The bastion refused every offered authentication method."""


class SessionClosed(TunnelError):
    """A dial was requested on a session that has already been closed."""


class DialFailed(TunnelError, ConnectionError):
    """The bastion refused to open a channel to the remote address."""


class DialTimeout(TunnelError, TimeoutError):
    """Opening a channel did not complete before its deadline."""


class ListenerBindFailed(TunnelError):
    """No ephemeral local port could be bound for forwarding."""


class RelayIOError(TunnelError):
    """A forwarded pair failed mid-stream; only that pair is affected."""


__all__ = [
    "AuthRejected",
    "CredentialError",
    "DialFailed",
    "DialTimeout",
    "HandshakeFailed",
    "HostKeyMismatch",
    "InvalidKeyMaterial",
    "ListenerBindFailed",
    "NoAuthMethodAvailable",
    "RelayIOError",
    "SessionClosed",
    "TunnelError",
]
