"""Daemon lifecycle: local unix socket plus optional TLS listener."""

from __future__ import annotations

import logging
import os

from aiohttp import web

from ..certs import find_or_generate_certificate
from ..config import DaemonConfig
from ..tls import create_server_context
from .api import create_app
from .backend import ContainerBackend
from .context import DaemonContext

_LOGGER = logging.getLogger(__name__)


class LxdDaemon:
    """One daemon instance serving a container backend.

    Usage:
        daemon = LxdDaemon(DaemonConfig(var_dir=path, listen_host="0.0.0.0"), backend)
        await daemon.start()
        ...
        await daemon.stop()
    """

    def __init__(self, config: DaemonConfig, backend: ContainerBackend) -> None:
        self.config = config
        self.backend = backend
        self.context: DaemonContext | None = None
        self._runner: web.AppRunner | None = None
        self._server_certificate: bytes | None = None

    @property
    def server_certificate(self) -> bytes | None:
        """DER certificate served on the TLS listener, None without one."""
        return self._server_certificate

    async def start(self) -> None:
        if self._runner is not None:
            raise RuntimeError("Daemon is already running")
        self.config.var_dir.mkdir(parents=True, exist_ok=True)
        context = DaemonContext.create(self.config, self.backend)

        if self.config.listen_host:
            cert_file = self.config.var_path("server.crt")
            key_file = self.config.var_path("server.key")
            self._server_certificate = find_or_generate_certificate(cert_file, key_file)
            context.ssl_context = create_server_context(
                cert_file,
                key_file,
                [entry.der for entry in context.client_certs.entries()],
            )

        runner = web.AppRunner(create_app(context))
        await runner.setup()

        socket_path = self.config.socket_path
        if socket_path.exists():
            _LOGGER.debug("Removing stale socket %s", socket_path)
            socket_path.unlink()
        await web.UnixSite(runner, str(socket_path)).start()
        os.chmod(socket_path, 0o660)
        _LOGGER.info("Listening on %s", socket_path)

        if context.ssl_context is not None:
            site = web.TCPSite(
                runner,
                self.config.listen_host,
                self.config.listen_port,
                ssl_context=context.ssl_context,
            )
            await site.start()
            _LOGGER.info(
                "Listening on https://%s:%s",
                self.config.listen_host,
                self.config.listen_port,
            )

        self.context = context
        self._runner = runner

    async def stop(self) -> None:
        if self._runner is None:
            return
        _LOGGER.info("Stopping daemon")
        if self.context is not None:
            await self.context.operations.shutdown()
        await self._runner.cleanup()
        self._runner = None
        self.context = None

    async def __aenter__(self) -> LxdDaemon:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()
