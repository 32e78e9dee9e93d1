"""
Configuration for the server, the sync client and the command line client.
"""
import os
from typing import Optional, Tuple

from serde import SerdeError, serde
from serde.toml import from_toml

from .errors import SnapsyncError

DEFAULT_CONFIG = os.path.join("~", ".config", "snapsync", "config.toml")


class ConfigError(SnapsyncError):
    kind = "ConfigError"
    status_code = 400


@serde
class ServerConfig:
    addr: str
    db: str


@serde
class SyncConfig:
    remote: str
    dir: str
    resync_time: int = 60
    watch: bool = True


@serde
class ClientConfig:
    remote: str


@serde
class Config:
    server: Optional[ServerConfig] = None
    sync: Optional[SyncConfig] = None
    client: Optional[ClientConfig] = None


def parse_addr(addr: str) -> Tuple[str, int]:
    """Split ``host:port`` into its parts."""
    host, sep, port = addr.rpartition(":")
    if not sep or not host:
        raise ConfigError(f"address {addr!r} must be host:port")
    try:
        return host.strip("[]"), int(port)
    except ValueError:
        raise ConfigError(f"address {addr!r} has an invalid port")


def load_config(path: Optional[str] = None) -> Config:
    path = os.path.expanduser(path or DEFAULT_CONFIG)
    if not os.path.isfile(path):
        raise ConfigError(f"config file {path!r} not found")
    with open(path, "r") as f:
        text = f.read()
    try:
        return from_toml(Config, text)
    except (SerdeError, ValueError) as e:
        raise ConfigError(f"invalid config {path!r}: {e}") from e
