"""Connection profiles and tunnel settings."""

from __future__ import annotations

from pathlib import Path
from urllib.parse import parse_qs, quote, urlsplit

import tomllib

from pydantic import BaseModel, ConfigDict, Field

CONFIG_FILE = Path.home() / ".config" / "pgtunnel" / "config.toml"

DEFAULT_PG_PORT = 5432
DEFAULT_SSH_PORT = 22
DEFAULT_SSL_MODE = "disable"


class SSHConfig(BaseModel):
    """SSH bastion settings nested inside a profile."""

    model_config = ConfigDict(frozen=True)

    enabled: bool = False
    host: str | None = None
    port: int = DEFAULT_SSH_PORT
    user: str | None = None
    key_path: str | None = None
    passphrase: str | None = Field(default=None, repr=False)
    password: str | None = Field(default=None, repr=False)
    timeout: float = 0
    known_hosts: str | None = None

    @property
    def address(self) -> tuple[str, int]:
        return self.host or "", self.port or DEFAULT_SSH_PORT


class Profile(BaseModel):
    """A database endpoint, optionally reachable only through a bastion."""

    model_config = ConfigDict(frozen=True)

    name: str = "default"
    user: str | None = None
    password: str | None = Field(default=None, repr=False)
    host: str | None = None
    port: int | None = None
    database: str | None = None
    ssl_mode: str = DEFAULT_SSL_MODE
    dburl: str | None = Field(default=None, repr=False)
    ssh: SSHConfig = Field(default_factory=SSHConfig)

    @property
    def effective_port(self) -> int:
        return self.port or DEFAULT_PG_PORT

    @property
    def address(self) -> tuple[str, int]:
        """Database address as seen from wherever the dial originates; `dburl` wins."""

        if self.dburl:
            return _dsn_address(self.dburl)
        return self.host or "localhost", self.effective_port


class TunnelSettings(BaseModel):
    """Timeouts and sizing knobs passed explicitly into the facade."""

    ssh_timeout: float = 15.0
    keepalive_interval: int = 30
    dial_timeout: float = 10.0
    connect_timeout: float = 10.0
    ping_timeout: float = 5.0
    pool_min_size: int = 1
    pool_max_size: int = 5
    pool_max_inactive_lifetime: float = 120.0
    forward_poll_interval: float = 0.5
    relay_buffer_size: int = 32 * 1024
    close_timeout: float = 5.0

    def ssh_timeout_for(self, ssh: SSHConfig) -> float:
        """Profile timeout wins when set; otherwise fall back to the default."""

        return float(ssh.timeout) if ssh.timeout and ssh.timeout > 0 else self.ssh_timeout


def build_dsn(profile: Profile) -> str:
    """Return a libpq-style URL for the profile; `dburl` wins when present."""

    if profile.dburl:
        return profile.dburl
    user = quote(profile.user or "", safe="")
    password = quote(profile.password or "", safe="")
    host, port = profile.address
    database = quote(profile.database or "", safe="")
    ssl_mode = profile.ssl_mode or DEFAULT_SSL_MODE
    return f"postgres://{user}:{password}@{host}:{port}/{database}?sslmode={ssl_mode}"


def connect_kwargs(profile: Profile) -> dict[str, object]:
    """asyncpg keyword arguments for the profile (without timeouts)."""

    kwargs: dict[str, object] = {}
    if profile.dburl:
        kwargs["dsn"] = profile.dburl
        return kwargs
    host, port = profile.address
    kwargs["host"] = host
    kwargs["port"] = port
    if profile.user:
        kwargs["user"] = profile.user
    if profile.password:
        kwargs["password"] = profile.password
    if profile.database:
        kwargs["database"] = profile.database
    kwargs["ssl"] = profile.ssl_mode or DEFAULT_SSL_MODE
    return kwargs


def local_profile(profile: Profile, port: int) -> Profile:
    """Profile an external tool should use to reach a forwarded database."""

    return profile.model_copy(
        update={
            "host": "localhost",
            "port": port,
            "dburl": None,
            "ssh": profile.ssh.model_copy(update={"enabled": False}),
        }
    )


def load_settings(path: Path | None = None) -> TunnelSettings:
    """Load the `[tunnel]` table from disk; fall back to defaults if missing."""

    try:
        data = _read_settings_file(path or CONFIG_FILE)
    except FileNotFoundError:
        return TunnelSettings()
    except (tomllib.TOMLDecodeError, OSError):
        return TunnelSettings()
    return TunnelSettings(**data)


def _read_settings_file(path: Path) -> dict[str, object]:
    with path.open("rb") as handle:
        raw = tomllib.load(handle)
    data: dict[str, object] = {}
    table = raw.get("tunnel") if isinstance(raw, dict) else None
    if not isinstance(table, dict):
        return data
    for name, field in TunnelSettings.model_fields.items():
        value = table.get(name)
        if isinstance(value, bool) or value is None:
            continue
        if field.annotation is int and isinstance(value, int):
            data[name] = value
        elif field.annotation is float and isinstance(value, (int, float)):
            data[name] = float(value)
    return data



def _dsn_address(dsn: str) -> tuple[str, int]:
    parts = urlsplit(dsn)
    query = parse_qs(parts.query)
    host = query.get("host", [parts.hostname])[0]
    try:
        port = int(query["port"][0]) if "port" in query else parts.port
    except ValueError:
        # Multi-host netlocs (h1:5432,h2:5433) fall back to the default port.
        port = None
    return host or "localhost", port or DEFAULT_PG_PORT


__all__ = [
    "CONFIG_FILE",
    "Profile",
    "SSHConfig",
    "TunnelSettings",
    "build_dsn",
    "connect_kwargs",
    "load_settings",
    "local_profile",
]
