"""High-level LXD client actions.

Each action issues one request through ``LxdHttpClient`` and checks the
envelope kind it expects. Actions that start background work return the
async envelope; ``wait_for`` then long-polls the operation it names.
"""

from __future__ import annotations

import asyncio
import logging
import socket
from typing import IO, Any

from .certs import encode_b64_certificate
from .config import DEFAULT_WAIT_TIMEOUT, ClientConfig
from .errors import (
    LxdApiError,
    LxdClientError,
    LxdTimeout,
    MalformedEnvelope,
    OperationFailed,
    PasswordRejected,
)
from .files import DEFAULT_MODE, PulledFile, pull_file, push_file
from .http import LxdHttpClient
from .operation import Operation, OperationResult, OperationStatus
from .protocol import (
    API_COMPAT,
    AsyncResponse,
    ContainerAction,
    expect_async,
    expect_sync,
)
from .trust import ConfirmCallback

_LOGGER = logging.getLogger(__name__)

DEFAULT_IMAGE_SOURCE: dict[str, str] = {
    "type": "remote",
    "url": "https+lxc-images://images.linuxcontainers.org",
    "name": "lxc-images/ubuntu/trusty/amd64",
}

# Extra slack on top of the server-side wait before the request times out
_WAIT_GRACE = 10.0


class LxdClient:
    """Client for one LXD daemon, local or remote.

    Usage:
        client = await LxdClient.connect(config, "myremote", confirm=ask_user)
        resp = await client.create("web1")
        op = await client.wait_for_success(resp.operation)
        await client.close()
    """

    def __init__(
        self,
        http: LxdHttpClient,
        *,
        wait_timeout: float = DEFAULT_WAIT_TIMEOUT,
    ) -> None:
        self.http = http
        self._wait_timeout = wait_timeout

    @classmethod
    async def connect(
        cls,
        config: ClientConfig,
        remote: str = "",
        *,
        confirm: ConfirmCallback | None = None,
    ) -> LxdClient:
        """Open a client for ``remote`` ("" is the local daemon) and finger it."""
        if not remote:
            http = LxdHttpClient.local(config.local_socket)
        elif remote in config.remotes:
            http = LxdHttpClient.remote(config.remotes[remote], config, confirm=confirm)
        else:
            raise LxdClientError(f"unknown remote name: {remote!r}")

        client = cls(http)
        try:
            await client.finger()
        except BaseException:
            await http.close()
            raise
        return client

    async def close(self) -> None:
        await self.http.close()

    async def __aenter__(self) -> LxdClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    # -------------------------------------------------------------------------
    # Handshake and trust
    # -------------------------------------------------------------------------

    async def finger(self) -> dict[str, Any]:
        """Probe the daemon and check API compatibility."""
        _LOGGER.debug("fingering the daemon")
        envelope = await self.http.get("finger", anonymous=True)
        info = expect_sync(envelope).metadata_as_map()
        server_compat = info.get("api_compat")
        if server_compat != API_COMPAT:
            raise LxdClientError(
                f"api version mismatch: mine: {API_COMPAT}, daemon: {server_compat!r}"
            )
        _LOGGER.debug("pong received")
        return info

    async def am_trusted(self) -> bool:
        """Whether the daemon accepts this client's certificate."""
        try:
            envelope = await self.http.get("finger")
            info = expect_sync(envelope).metadata_as_map()
        except LxdClientError as err:
            _LOGGER.debug("Trust probe failed: %s", err)
            return False
        return info.get("auth") == "trusted"

    async def add_cert_to_server(
        self,
        password: str | None = None,
        *,
        name: str | None = None,
    ) -> None:
        """Ask the daemon to trust this client's certificate.

        Raises:
            PasswordRejected: The daemon refused the password.
        """
        body: dict[str, Any] = {"type": "client", "name": name or socket.gethostname()}
        if password is not None:
            body["password"] = password
        certificate = self.http.client_certificate
        if certificate is not None:
            body["certificate"] = encode_b64_certificate(certificate)

        envelope = await self.http.post("trust", body, anonymous=True)
        try:
            expect_sync(envelope)
        except LxdApiError as err:
            if err.code == 403:
                raise PasswordRejected(err.message) from err
            raise

    async def list_trusted(self) -> list[dict[str, str]]:
        envelope = await self.http.get("trust")
        return expect_sync(envelope).metadata_as_list()

    async def get_trusted(self, fingerprint: str) -> dict[str, str]:
        envelope = await self.http.get(f"trust/{fingerprint}")
        return expect_sync(envelope).metadata_as_map()

    async def set_remote_password(self, password: str) -> None:
        body = {"config": [{"key": "trust-password", "value": password}]}
        expect_sync(await self.http.put("", body))

    # -------------------------------------------------------------------------
    # Containers
    # -------------------------------------------------------------------------

    async def list_containers(self) -> list[str]:
        envelope = await self.http.get("list")
        names = expect_sync(envelope).metadata_as_list()
        if not all(isinstance(name, str) for name in names):
            raise MalformedEnvelope("Container list holds non-string names")
        return names

    async def create(
        self,
        name: str | None = None,
        *,
        source: dict[str, Any] | None = None,
    ) -> AsyncResponse:
        body: dict[str, Any] = {"source": source or DEFAULT_IMAGE_SOURCE}
        if name:
            body["name"] = name
        return expect_async(await self.http.post("containers", body))

    async def container_status(self, name: str) -> dict[str, Any]:
        envelope = await self.http.get(f"containers/{name}")
        return expect_sync(envelope).metadata_as_map()

    async def action(
        self,
        name: str,
        action: ContainerAction,
        *,
        timeout: int = -1,
        force: bool = False,
    ) -> AsyncResponse:
        body = {"action": action.value, "timeout": timeout, "force": force}
        return expect_async(await self.http.put(f"containers/{name}/state", body))

    async def delete(self, name: str) -> AsyncResponse:
        return expect_async(await self.http.delete(f"containers/{name}"))

    async def snapshot(
        self, container: str, snapshot_name: str, *, stateful: bool = False
    ) -> AsyncResponse:
        body = {"name": snapshot_name, "stateful": stateful}
        return expect_async(await self.http.post(f"containers/{container}/snapshots", body))

    async def push_file(
        self,
        container: str,
        path: str,
        source: bytes | IO[bytes],
        *,
        uid: int = 0,
        gid: int = 0,
        mode: int = DEFAULT_MODE,
    ) -> None:
        await push_file(self.http, container, path, source, uid=uid, gid=gid, mode=mode)

    async def pull_file(self, container: str, path: str) -> PulledFile:
        return await pull_file(self.http, container, path)

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    async def get_operation(self, operation: str) -> Operation:
        envelope = await self.http.get(operation)
        return expect_sync(envelope).metadata_as_operation()

    async def cancel_operation(self, operation: str) -> None:
        expect_sync(await self.http.delete(operation))

    async def wait_for(self, operation: str, *, timeout: float | None = None) -> Operation:
        """Long-poll ``operation`` until it reaches a terminal status.

        The daemon answers each wait after at most ``wait_timeout`` seconds;
        non-terminal answers are followed by another wait. Transport errors
        are not retried.

        Raises:
            LxdTimeout: ``timeout`` elapsed before the operation finished.
        """
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while True:
            wait = self._wait_timeout
            if deadline is not None:
                wait = max(0.0, min(wait, deadline - loop.time()))
            envelope = await self.http.post(
                f"{operation}/wait",
                {},
                params={"timeout": str(wait)},
                timeout=wait + _WAIT_GRACE,
            )
            op = expect_sync(envelope).metadata_as_operation()
            if op.status.is_terminal:
                return op
            _LOGGER.debug("Operation %s still %s", operation, op.status.value)
            if deadline is not None and loop.time() >= deadline:
                raise LxdTimeout(f"Operation {operation} did not finish in {timeout}s")

    async def wait_for_success(
        self, operation: str, *, timeout: float | None = None
    ) -> Operation:
        """Wait for ``operation`` and raise if it did not succeed."""
        op = await self.wait_for(operation, timeout=timeout)
        if op.result is OperationResult.SUCCESS:
            return op
        if op.status is OperationStatus.CANCELLED:
            raise OperationFailed(f"Operation {operation} was cancelled")
        raise op.get_error() or OperationFailed(f"Operation {operation} failed")
