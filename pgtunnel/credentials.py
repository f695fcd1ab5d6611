"""Turn a profile's SSH settings into an ordered list of auth methods."""

from __future__ import annotations

import logging
import os
import socket
from dataclasses import dataclass, field
from string import Template
from typing import Mapping, Protocol, Sequence, runtime_checkable

import paramiko
import paramiko.agent

from .config import SSHConfig
from .errors import InvalidKeyMaterial, NoAuthMethodAvailable

LOG = logging.getLogger(__name__)

AGENT_SOCKET_ENV = "SSH_AUTH_SOCK"

_KEY_CLASSES: tuple[type[paramiko.PKey], ...] = (paramiko.Ed25519Key, paramiko.ECDSAKey, paramiko.RSAKey)


@runtime_checkable
class AuthMethod(Protocol):
    """One way of proving identity to the bastion."""

    name: str

    def authenticate(self, transport: paramiko.Transport, username: str) -> bool:
        """Attempt authentication; return True once the transport is authenticated."""


@dataclass(slots=True)
class AgentAuth:
    """Offer every key held by the running ssh-agent."""

    keys: Sequence[paramiko.PKey]
    name: str = "agent"

    def authenticate(self, transport: paramiko.Transport, username: str) -> bool:
        for key in self.keys:
            try:
                transport.auth_publickey(username, key)
            except paramiko.AuthenticationException:
                LOG.debug("Agent key %s rejected for %s", key.get_name(), username)
                continue
            if transport.is_authenticated():
                return True
        return False


@dataclass(slots=True)
class KeyAuth:
    """Authenticate with a private key loaded from disk."""

    key: paramiko.PKey
    name: str = "publickey"

    def authenticate(self, transport: paramiko.Transport, username: str) -> bool:
        transport.auth_publickey(username, self.key)
        return transport.is_authenticated()


@dataclass(slots=True)
class PasswordAuth:
    """Authenticate with a plain password."""

    password: str = field(repr=False)
    name: str = "password"

    def authenticate(self, transport: paramiko.Transport, username: str) -> bool:
        transport.auth_password(username, self.password)
        return transport.is_authenticated()


def resolve_auth_methods(
    ssh: SSHConfig,
    environ: Mapping[str, str] | None = None,
) -> list[AuthMethod]:
    """Return agent, key, and password methods in that order.

    Every applicable source is included; the handshake tries them in turn.
    A configured key that cannot be used is a hard failure rather than
    being skipped.
    """

    if not ssh.host or not ssh.user:
        raise NoAuthMethodAvailable("SSH host and user are required")

    env = os.environ if environ is None else environ
    methods: list[AuthMethod] = []

    agent = _agent_method(env)
    if agent is not None:
        methods.append(agent)

    if ssh.key_path:
        methods.append(KeyAuth(load_private_key(ssh.key_path, ssh.passphrase, env)))

    if ssh.password:
        methods.append(PasswordAuth(ssh.password))

    if not methods:
        raise NoAuthMethodAvailable(
            f"No valid SSH authentication method found for {ssh.user}@{ssh.host}"
        )
    LOG.debug("Resolved SSH auth methods: %s", ", ".join(method.name for method in methods))
    return methods


def load_private_key(
    key_path: str,
    passphrase: str | None = None,
    environ: Mapping[str, str] | None = None,
) -> paramiko.PKey:
    """Load a private key, trying the passphrase first when one is given."""

    path = _expand_path(key_path, os.environ if environ is None else environ)
    if not os.path.isfile(path) or not os.access(path, os.R_OK):
        raise InvalidKeyMaterial(f"Failed to read SSH private key: {path}")

    attempts: list[str | None] = [passphrase, None] if passphrase else [None]
    first_error: Exception | None = None
    for secret in attempts:
        try:
            return _parse_key_file(path, secret)
        except OSError as exc:
            raise InvalidKeyMaterial(f"Failed to read SSH private key: {path}") from exc
        except (paramiko.SSHException, ValueError) as exc:
            first_error = first_error or exc
    raise InvalidKeyMaterial(f"Invalid SSH private key {path}: {first_error}") from first_error


def _parse_key_file(path: str, passphrase: str | None) -> paramiko.PKey:
    last_error: Exception | None = None
    for key_class in _KEY_CLASSES:
        try:
            return key_class.from_private_key_file(path, password=passphrase)
        except paramiko.PasswordRequiredException:
            raise
        except (paramiko.SSHException, ValueError) as exc:
            last_error = exc
    raise paramiko.SSHException(f"unsupported or malformed private key ({last_error})")


class _SocketAgent(paramiko.Agent):
    """ssh-agent client bound to an explicit socket path.

    ``paramiko.Agent()`` only looks at ``os.environ``; this honours the
    environment handed to the resolver instead.
    """

    def __init__(self, socket_path: str) -> None:
        paramiko.agent.AgentSSH.__init__(self)
        conn = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        try:
            conn.connect(socket_path)
        except OSError as exc:
            conn.close()
            raise paramiko.SSHException(f"Cannot reach ssh-agent at {socket_path}: {exc}") from exc
        try:
            self._connect(conn)
        except BaseException:
            self._close()
            conn.close()
            raise


def _agent_method(env: Mapping[str, str]) -> AgentAuth | None:
    socket_path = env.get(AGENT_SOCKET_ENV)
    if not socket_path or not os.path.exists(socket_path):
        return None
    try:
        agent = _SocketAgent(socket_path)
    except (paramiko.SSHException, OSError) as exc:
        LOG.debug("ssh-agent at %s unusable: %s", socket_path, exc)
        return None
    keys = agent.get_keys()
    if not keys:
        agent.close()
        return None
    return AgentAuth(tuple(keys))


def _expand_path(path: str, env: Mapping[str, str]) -> str:
    return Template(os.path.expanduser(path)).safe_substitute(env)


__all__ = [
    "AGENT_SOCKET_ENV",
    "AgentAuth",
    "AuthMethod",
    "KeyAuth",
    "PasswordAuth",
    "load_private_key",
    "resolve_auth_methods",
]
