"""HTTP transport for LXD daemon endpoints.

Requests go either over the local unix socket, which is trusted implicitly,
or over TLS to a named remote. On the remote channel the daemon certificate
is reconciled with the pinned one before any response body is parsed.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import aiohttp

from .certs import find_or_generate_certificate
from .config import ClientConfig, RemoteConfig
from .errors import (
    LxdConnectionError,
    LxdTimeout,
    ServerCertificateChanged,
)
from .protocol import API_VERSION, Envelope, parse_envelope
from .tls import CertificatePinMismatch, PeerCertificate, create_client_context
from .trust import ConfirmCallback, ServerCertificateStore

_LOGGER = logging.getLogger(__name__)

DEFAULT_REQUEST_TIMEOUT = 30.0
LOCAL_BASE_URL = "http://unix.socket"


class LxdHttpClient:
    """HTTP client wrapper for LXD daemon endpoints."""

    def __init__(
        self,
        session: aiohttp.ClientSession,
        base_url: str,
        *,
        peer: PeerCertificate | None = None,
        cert_store: ServerCertificateStore | None = None,
        ssl_context: Any = None,
        anonymous_ssl_context: Any = None,
        client_certificate: bytes | None = None,
        confirm: ConfirmCallback | None = None,
        owns_session: bool = False,
    ) -> None:
        self._session = session
        self._base_url = base_url.rstrip("/")
        self._peer = peer
        self._cert_store = cert_store
        self._ssl = ssl_context
        self._anonymous_ssl = anonymous_ssl_context or ssl_context
        self._client_certificate = client_certificate
        self._confirm = confirm
        self._owns_session = owns_session

    @classmethod
    def local(cls, socket_path: Path) -> LxdHttpClient:
        """Client for the daemon listening on ``socket_path``."""
        connector = aiohttp.UnixConnector(path=str(socket_path))
        return cls(
            aiohttp.ClientSession(connector=connector),
            LOCAL_BASE_URL,
            owns_session=True,
        )

    @classmethod
    def remote(
        cls,
        remote: RemoteConfig,
        config: ClientConfig,
        *,
        confirm: ConfirmCallback | None = None,
        present_certificate: bool = True,
    ) -> LxdHttpClient:
        """Client for a named remote over mutually authenticated TLS."""
        store = ServerCertificateStore(config.server_cert_dir)
        peer = PeerCertificate(remote.name, pinned=store.load(remote.name))
        anonymous = create_client_context(peer)
        ssl_context = anonymous
        client_certificate = None
        if present_certificate:
            client_certificate = find_or_generate_certificate(
                config.cert_file, config.key_file
            )
            ssl_context = create_client_context(
                peer, cert_file=config.cert_file, key_file=config.key_file
            )

        host, port = remote.host_port
        if ":" in host:
            host = f"[{host}]"
        return cls(
            aiohttp.ClientSession(),
            f"https://{host}:{port}",
            peer=peer,
            cert_store=store,
            ssl_context=ssl_context,
            anonymous_ssl_context=anonymous,
            client_certificate=client_certificate,
            confirm=confirm,
            owns_session=True,
        )

    @property
    def is_local(self) -> bool:
        return self._peer is None

    @property
    def client_certificate(self) -> bytes | None:
        """DER certificate this client presents, if any."""
        return self._client_certificate

    @property
    def server_certificate(self) -> bytes | None:
        """DER certificate seen on the most recent TLS handshake."""
        return self._peer.observed if self._peer is not None else None

    async def close(self) -> None:
        if self._owns_session:
            await self._session.close()

    async def __aenter__(self) -> LxdHttpClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    def url(self, path: str) -> str:
        """Absolute URL for ``path``.

        Relative paths are placed under the versioned API prefix; paths
        starting with ``/`` (such as operation locators) are used as is.
        """
        if not path.startswith("/"):
            path = f"/{API_VERSION}/{path}" if path else f"/{API_VERSION}"
        return f"{self._base_url}{path}"

    def _request_kwargs(
        self,
        *,
        anonymous: bool,
        timeout: float,
        params: dict[str, str] | None,
    ) -> dict[str, Any]:
        kwargs: dict[str, Any] = {"timeout": aiohttp.ClientTimeout(total=timeout)}
        if params:
            kwargs["params"] = params
        if self._ssl is not None:
            kwargs["ssl"] = self._anonymous_ssl if anonymous else self._ssl
        return kwargs

    async def _check_peer(self) -> None:
        if self._peer is None:
            return
        observed = self._peer.observed
        if observed is None:
            raise LxdConnectionError("No certificate on this connection")
        if observed == self._peer.pinned:
            return
        if self._cert_store is None:
            raise ServerCertificateChanged(
                f"Server certificate for {self._peer.remote} is not pinned"
            )
        await self._cert_store.reconcile(self._peer.remote, observed, self._confirm)
        self._peer.pinned = observed

    @staticmethod
    def _pin_error(err: aiohttp.ClientConnectorCertificateError) -> ServerCertificateChanged | None:
        if isinstance(err.certificate_error, CertificatePinMismatch):
            return ServerCertificateChanged(str(err.certificate_error))
        return None

    async def request(
        self,
        method: str,
        path: str,
        body: Any = None,
        *,
        params: dict[str, str] | None = None,
        anonymous: bool = False,
        timeout: float = DEFAULT_REQUEST_TIMEOUT,
    ) -> Envelope:
        """Send a JSON request and decode the envelope it returns."""
        url = self.url(path)
        kwargs = self._request_kwargs(anonymous=anonymous, timeout=timeout, params=params)
        if body is not None:
            kwargs["json"] = body
        _LOGGER.debug("%s %s %s", method, url, body)
        try:
            async with self._session.request(method, url, **kwargs) as resp:
                await self._check_peer()
                raw = await resp.read()
        except aiohttp.ClientConnectorCertificateError as err:
            pin_error = self._pin_error(err)
            if pin_error is not None:
                raise pin_error from err
            raise LxdConnectionError(f"{method} {path}: TLS handshake failed") from err
        except TimeoutError as err:
            raise LxdTimeout(f"{method} {path} timed out") from err
        except aiohttp.ClientError as err:
            raise LxdConnectionError(f"{method} {path} failed") from err

        _LOGGER.debug("raw response: %s", raw)
        return parse_envelope(raw)

    async def get(self, path: str, **kwargs: Any) -> Envelope:
        return await self.request("GET", path, **kwargs)

    async def put(self, path: str, body: Any = None, **kwargs: Any) -> Envelope:
        return await self.request("PUT", path, body, **kwargs)

    async def post(self, path: str, body: Any = None, **kwargs: Any) -> Envelope:
        return await self.request("POST", path, body, **kwargs)

    async def delete(self, path: str, body: Any = None, **kwargs: Any) -> Envelope:
        return await self.request("DELETE", path, body, **kwargs)

    async def open(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, str] | None = None,
        data: Any = None,
        headers: dict[str, str] | None = None,
        timeout: float = DEFAULT_REQUEST_TIMEOUT,
    ) -> aiohttp.ClientResponse:
        """Send a raw request and return the unread response.

        The caller owns the response and must release it.
        """
        url = self.url(path)
        kwargs = self._request_kwargs(anonymous=False, timeout=timeout, params=params)
        _LOGGER.debug("%s %s (raw)", method, url)
        try:
            resp = await self._session.request(
                method, url, data=data, headers=headers, **kwargs
            )
        except aiohttp.ClientConnectorCertificateError as err:
            pin_error = self._pin_error(err)
            if pin_error is not None:
                raise pin_error from err
            raise LxdConnectionError(f"{method} {path}: TLS handshake failed") from err
        except TimeoutError as err:
            raise LxdTimeout(f"{method} {path} timed out") from err
        except aiohttp.ClientError as err:
            raise LxdConnectionError(f"{method} {path} failed") from err

        try:
            await self._check_peer()
        except BaseException:
            resp.release()
            raise
        return resp

    @staticmethod
    async def read_envelope(resp: aiohttp.ClientResponse) -> Envelope:
        """Read and decode the body of a raw response, then release it."""
        try:
            raw = await resp.read()
        except TimeoutError as err:
            raise LxdTimeout("Reading response timed out") from err
        except aiohttp.ClientError as err:
            raise LxdConnectionError("Reading response failed") from err
        finally:
            resp.release()
        return parse_envelope(raw)
