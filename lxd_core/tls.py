"""TLS contexts for the remote channel.

Daemons use self-signed certificates, so the client does not verify the
server against a CA. Instead every handshake records the peer certificate
on a ``PeerCertificate`` holder and, when a pin is known, aborts the
handshake if the daemon presents anything else.
"""

from __future__ import annotations

import logging
import ssl
from dataclasses import dataclass
from pathlib import Path

from .certs import der_to_pem

_LOGGER = logging.getLogger(__name__)


class CertificatePinMismatch(ssl.SSLCertVerificationError):
    """Peer certificate differs from the pinned one."""


@dataclass(slots=True)
class PeerCertificate:
    """Pinned and last observed daemon certificate for one remote."""

    remote: str
    pinned: bytes | None = None
    observed: bytes | None = None

    def observe(self, der: bytes | None) -> None:
        if der is None:
            return
        self.observed = der
        if self.pinned is not None and der != self.pinned:
            raise CertificatePinMismatch(
                f"Server certificate for {self.remote} has changed"
            )


class _PinningSSLObject(ssl.SSLObject):
    peer: PeerCertificate | None = None

    def do_handshake(self) -> None:
        super().do_handshake()
        if self.peer is not None:
            self.peer.observe(self.getpeercert(binary_form=True))


class _PinningSSLContext(ssl.SSLContext):
    peer: PeerCertificate | None = None

    def wrap_bio(self, *args, **kwargs) -> ssl.SSLObject:
        sslobj = super().wrap_bio(*args, **kwargs)
        sslobj.peer = self.peer
        return sslobj


def create_client_context(
    peer: PeerCertificate,
    *,
    cert_file: Path | None = None,
    key_file: Path | None = None,
) -> ssl.SSLContext:
    """Build a client context that records and checks the daemon certificate.

    Without ``cert_file`` the context connects anonymously.
    """
    context = _PinningSSLContext(ssl.PROTOCOL_TLS_CLIENT)
    context.sslobject_class = _PinningSSLObject
    context.peer = peer
    context.check_hostname = False
    context.verify_mode = ssl.CERT_NONE
    context.minimum_version = ssl.TLSVersion.TLSv1_2
    context.maximum_version = ssl.TLSVersion.TLSv1_2
    if cert_file is not None:
        context.load_cert_chain(cert_file, key_file)
    return context


def create_server_context(
    cert_file: Path,
    key_file: Path,
    trusted_clients: list[bytes],
) -> ssl.SSLContext:
    """Build the daemon context.

    Client certificates are optional at the TLS layer; pinned client
    certificates are the only trust anchors, so a certificate that is
    presented must be one of them.
    """
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    context.minimum_version = ssl.TLSVersion.TLSv1_2
    context.maximum_version = ssl.TLSVersion.TLSv1_2
    context.load_cert_chain(cert_file, key_file)
    context.verify_mode = ssl.CERT_OPTIONAL
    for der in trusted_clients:
        add_trusted_client(context, der)
    return context


def add_trusted_client(context: ssl.SSLContext, der: bytes) -> None:
    """Accept ``der`` as a client certificate on future handshakes."""
    context.load_verify_locations(cadata=der_to_pem(der).decode("ascii"))
    _LOGGER.debug("Added client certificate to the TLS trust anchors")
