"""Client and daemon configuration objects.

Loading these from files is left to the caller; this module only fixes the
on-disk layout both sides rely on and the environment overrides.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_DAEMON_DIR = Path("/var/lib/lxd")
DEFAULT_PORT = 8443
DEFAULT_WAIT_TIMEOUT = 30.0


@dataclass(frozen=True, slots=True)
class RemoteConfig:
    """A named daemon reachable over the network."""

    name: str
    addr: str

    @property
    def host_port(self) -> tuple[str, int]:
        host, sep, port = self.addr.rpartition(":")
        if not sep or not port.isdigit() or (":" in host and not host.endswith("]")):
            return self.addr.strip("[]"), DEFAULT_PORT
        return host.strip("[]"), int(port)


@dataclass(slots=True)
class ClientConfig:
    """Client-side settings and paths."""

    config_dir: Path
    remotes: dict[str, RemoteConfig] = field(default_factory=dict)
    default_remote: str = ""
    local_socket: Path = DEFAULT_DAEMON_DIR / "unix.socket"

    @classmethod
    def from_env(cls) -> ClientConfig:
        """Use ``$LXD_CONF`` or ``~/.config/lxc`` as the configuration root."""
        conf = os.environ.get("LXD_CONF")
        config_dir = Path(conf) if conf else Path.home() / ".config" / "lxc"
        daemon_dir = Path(os.environ.get("LXD_DIR", DEFAULT_DAEMON_DIR))
        return cls(config_dir=config_dir, local_socket=daemon_dir / "unix.socket")

    @property
    def cert_file(self) -> Path:
        return self.config_dir / "client.crt"

    @property
    def key_file(self) -> Path:
        return self.config_dir / "client.key"

    @property
    def server_cert_dir(self) -> Path:
        return self.config_dir / "servercerts"

    def add_remote(self, name: str, addr: str) -> RemoteConfig:
        remote = RemoteConfig(name=name, addr=addr)
        self.remotes[name] = remote
        return remote


@dataclass(frozen=True, slots=True)
class DaemonConfig:
    """Daemon-side settings and paths."""

    var_dir: Path = DEFAULT_DAEMON_DIR
    listen_host: str | None = None
    listen_port: int = DEFAULT_PORT
    wait_timeout: float = DEFAULT_WAIT_TIMEOUT

    @classmethod
    def from_env(cls, **kwargs) -> DaemonConfig:
        """Use ``$LXD_DIR`` as the state directory when set."""
        var_dir = os.environ.get("LXD_DIR")
        if var_dir and "var_dir" not in kwargs:
            kwargs["var_dir"] = Path(var_dir)
        return cls(**kwargs)

    def var_path(self, *parts: str) -> Path:
        return self.var_dir.joinpath(*parts)

    @property
    def socket_path(self) -> Path:
        return self.var_path("unix.socket")


def parse_target(raw: str, config: ClientConfig) -> tuple[str, str]:
    """Split ``[remote:]container`` into its remote and container names.

    An empty remote name means the local daemon.
    """
    remote, sep, container = raw.partition(":")
    if not sep:
        return config.default_remote, raw
    return remote, container
