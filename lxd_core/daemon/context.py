"""Daemon state owned by one running daemon instance.

Handlers receive this context through the web application rather than
through module globals. It is created at startup and torn down by
``LxdDaemon.stop()``.
"""

from __future__ import annotations

import asyncio
import logging
import ssl
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any
from uuid import uuid4

from ..config import DaemonConfig
from ..errors import NotFoundError
from ..operation import Operation
from ..tls import add_trusted_client
from ..trust import ClientCertificateStore, PasswordVerifier, TrustedClient
from .backend import ContainerBackend

_LOGGER = logging.getLogger(__name__)


class OperationRegistry:
    """Operations by id, each executed as its own asyncio task.

    Finished operations are kept for the lifetime of the daemon; nothing
    removes entries, so ``ids()`` lists every operation ever started.
    """

    def __init__(self) -> None:
        self._operations: dict[str, Operation] = {}
        self._tasks: dict[str, asyncio.Task[None]] = {}

    def start(self, operation: Operation) -> str:
        """Register ``operation`` and schedule its unit of work."""
        operation_id = str(uuid4())
        self._operations[operation_id] = operation
        task = asyncio.create_task(operation.execute(), name=f"operation-{operation_id}")
        self._tasks[operation_id] = task
        task.add_done_callback(lambda _: self._tasks.pop(operation_id, None))
        _LOGGER.debug("Started operation %s for %s", operation_id, operation.resource_url)
        return operation_id

    def launch(
        self,
        run: Callable[[], Awaitable[Any]],
        *,
        resource_url: str = "",
        cancellable: bool = False,
    ) -> tuple[str, Operation]:
        """Create an operation for ``run`` and schedule it.

        The cancel hook of a cancellable operation cancels its task; the
        unit of work sees ``CancelledError`` at its next suspension point.
        """
        task: asyncio.Task[None] | None = None

        def cancel() -> None:
            if task is not None:
                task.cancel()

        operation = Operation.create(
            run, resource_url=resource_url, cancel=cancel if cancellable else None
        )
        operation_id = self.start(operation)
        task = self._tasks[operation_id]
        return operation_id, operation

    def get(self, operation_id: str) -> Operation:
        try:
            return self._operations[operation_id]
        except KeyError:
            raise NotFoundError(f"Operation {operation_id} not found") from None

    def ids(self) -> list[str]:
        return list(self._operations)

    async def shutdown(self) -> None:
        """Cancel outstanding units of work and wait for them to unwind."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            _LOGGER.info("Cancelling %d running operations", len(tasks))
            await asyncio.gather(*tasks, return_exceptions=True)


@dataclass
class DaemonContext:
    """Everything a request handler may touch."""

    config: DaemonConfig
    backend: ContainerBackend
    client_certs: ClientCertificateStore
    password: PasswordVerifier
    operations: OperationRegistry = field(default_factory=OperationRegistry)
    ssl_context: ssl.SSLContext | None = None

    @classmethod
    def create(cls, config: DaemonConfig, backend: ContainerBackend) -> DaemonContext:
        client_certs = ClientCertificateStore(config.var_path("clientcerts"))
        client_certs.load_all()
        return cls(
            config=config,
            backend=backend,
            client_certs=client_certs,
            password=PasswordVerifier(config.var_path("adminpwd")),
        )

    async def trust_client(self, host: str, der: bytes) -> TrustedClient:
        """Pin a client certificate and accept it on new TLS handshakes."""
        client = await self.client_certs.add(host, der)
        if self.ssl_context is not None:
            add_trusted_client(self.ssl_context, der)
        return client
