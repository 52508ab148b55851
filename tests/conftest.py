"""Pytest configuration and fixtures for lxd_core tests."""

from __future__ import annotations

import asyncio
import json
import shutil
import tempfile
from collections.abc import AsyncIterator, Iterator
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from lxd_core import DaemonConfig, LxdClient, LxdHttpClient, NotFoundError
from lxd_core.certs import generate_certificate
from lxd_core.daemon import LxdDaemon
from lxd_core.protocol import ContainerAction


@pytest.fixture
def mock_session() -> MagicMock:
    """Create a mock aiohttp ClientSession."""
    import aiohttp

    return MagicMock(spec=aiohttp.ClientSession)


def create_mock_response(
    status: int = 200,
    json_data: Any = None,
    read_data: bytes | None = None,
) -> AsyncMock:
    """Create a configured mock response.

    Args:
        status: HTTP status code
        json_data: Envelope to return from read(), JSON encoded
        read_data: Raw bytes to return from read()

    Returns:
        Configured AsyncMock response
    """
    response = AsyncMock()
    response.status = status

    if json_data is not None:
        response.read.return_value = json.dumps(json_data).encode()
    if read_data is not None:
        response.read.return_value = read_data

    response.__aenter__.return_value = response
    response.__aexit__.return_value = None

    return response


def make_certificate(directory: Path, name: str = "cert") -> bytes:
    """Generate a self-signed certificate and return its DER bytes."""
    return generate_certificate(directory / f"{name}.crt", directory / f"{name}.key")


class MemoryBackend:
    """In-memory container runtime for daemon tests."""

    def __init__(self) -> None:
        self.containers: dict[str, dict[str, Any]] = {}
        self.files: dict[tuple[str, str], tuple[int, int, int, bytes]] = {}
        self.create_gate: asyncio.Event | None = None
        self.create_error: Exception | None = None

    def _container(self, name: str) -> dict[str, Any]:
        try:
            return self.containers[name]
        except KeyError:
            raise NotFoundError(f"Container {name} not found") from None

    async def list_containers(self) -> list[str]:
        return list(self.containers)

    async def get_container(self, name: str) -> dict[str, Any]:
        return self._container(name)

    async def create_container(self, name: str, source: dict[str, Any]) -> None:
        if self.create_gate is not None:
            await self.create_gate.wait()
        if self.create_error is not None:
            raise self.create_error
        if name in self.containers:
            raise ValueError(f"Container {name} already exists")
        self.containers[name] = {"name": name, "status": "Stopped", "snapshots": []}

    async def change_state(
        self, name: str, action: ContainerAction, timeout: int, force: bool
    ) -> None:
        container = self._container(name)
        if action in (ContainerAction.START, ContainerAction.RESTART):
            container["status"] = "Running"
        elif action is ContainerAction.STOP:
            container["status"] = "Stopped"
        elif action is ContainerAction.FREEZE:
            container["status"] = "Frozen"
        else:
            container["status"] = "Running"

    async def delete_container(self, name: str) -> None:
        self._container(name)
        del self.containers[name]

    async def snapshot_container(self, name: str, snapshot: str, stateful: bool) -> None:
        self._container(name)["snapshots"].append(snapshot)

    async def push_file(
        self, name: str, path: str, uid: int, gid: int, mode: int, content: bytes
    ) -> None:
        self._container(name)
        self.files[(name, path)] = (uid, gid, mode, content)

    async def pull_file(self, name: str, path: str) -> tuple[int, int, int, bytes]:
        self._container(name)
        try:
            return self.files[(name, path)]
        except KeyError:
            raise NotFoundError(f"{path} not found in {name}") from None


@pytest.fixture
def backend() -> MemoryBackend:
    return MemoryBackend()


@pytest.fixture
def var_dir() -> Iterator[Path]:
    """Short state directory, unix socket paths have a length limit."""
    path = Path(tempfile.mkdtemp(prefix="lxd-"))
    yield path
    shutil.rmtree(path, ignore_errors=True)


@pytest.fixture
async def daemon(var_dir: Path, backend: MemoryBackend) -> AsyncIterator[LxdDaemon]:
    daemon = LxdDaemon(DaemonConfig(var_dir=var_dir, wait_timeout=5.0), backend)
    await daemon.start()
    yield daemon
    await daemon.stop()


@pytest.fixture
async def client(daemon: LxdDaemon) -> AsyncIterator[LxdClient]:
    """Client on the daemon's local unix socket."""
    client = LxdClient(LxdHttpClient.local(daemon.config.socket_path), wait_timeout=5.0)
    yield client
    await client.close()
