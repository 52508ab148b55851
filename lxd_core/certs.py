"""Certificate helpers shared by client and daemon.

Fingerprints are computed over the DER encoding on both sides so that a
certificate observed during the TLS handshake and one loaded from disk
produce the same identifier.
"""

from __future__ import annotations

import base64
import binascii
import datetime
import hashlib
import logging
import os
import socket
from pathlib import Path

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

_LOGGER = logging.getLogger(__name__)

CERT_VALIDITY_DAYS = 3650


def fingerprint(der: bytes) -> str:
    """Return the SHA-256 fingerprint of a DER certificate as lowercase hex."""
    return hashlib.sha256(der).hexdigest()


def format_fingerprint(der: bytes) -> str:
    """Render a fingerprint for an operator, one spaced hex byte at a time."""
    return hashlib.sha256(der).digest().hex(" ")


def der_to_pem(der: bytes) -> bytes:
    cert = x509.load_der_x509_certificate(der)
    return cert.public_bytes(serialization.Encoding.PEM)


def pem_to_der(pem: bytes) -> bytes:
    cert = x509.load_pem_x509_certificate(pem)
    return cert.public_bytes(serialization.Encoding.DER)


def decode_b64_certificate(data: str) -> bytes:
    """Decode a base64 DER certificate and check that it parses.

    Raises:
        ValueError: Not base64 or not an X.509 certificate.
    """
    try:
        der = base64.b64decode(data, validate=True)
    except binascii.Error as err:
        raise ValueError("Certificate is not valid base64") from err
    x509.load_der_x509_certificate(der)
    return der


def encode_b64_certificate(der: bytes) -> str:
    return base64.b64encode(der).decode("ascii")


def read_pem_certificate(path: Path) -> bytes:
    """Load a PEM certificate file and return its DER bytes."""
    return pem_to_der(path.read_bytes())


def write_pem_certificate(path: Path, der: bytes, *, mode: int = 0o600) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode)
    with os.fdopen(fd, "wb") as handle:
        handle.write(der_to_pem(der))


def generate_certificate(
    cert_path: Path,
    key_path: Path,
    *,
    common_name: str | None = None,
) -> bytes:
    """Create a self-signed key pair and write it as PEM files.

    Returns:
        DER bytes of the new certificate.
    """
    hostname = socket.gethostname()
    common_name = common_name or f"root@{hostname}"
    private_key = ec.generate_private_key(ec.SECP384R1())
    subject = issuer = x509.Name(
        [
            x509.NameAttribute(NameOID.ORGANIZATION_NAME, "linuxcontainers.org"),
            x509.NameAttribute(NameOID.COMMON_NAME, common_name),
        ]
    )
    now = datetime.datetime.now(datetime.UTC)
    certificate = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer)
        .public_key(private_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - datetime.timedelta(minutes=5))
        .not_valid_after(now + datetime.timedelta(days=CERT_VALIDITY_DAYS))
        .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
        .add_extension(
            x509.ExtendedKeyUsage(
                [ExtendedKeyUsageOID.SERVER_AUTH, ExtendedKeyUsageOID.CLIENT_AUTH]
            ),
            critical=False,
        )
        .add_extension(
            x509.SubjectAlternativeName([x509.DNSName(hostname)]), critical=False
        )
        .sign(private_key, hashes.SHA384())
    )

    cert_path.parent.mkdir(parents=True, exist_ok=True)
    key_path.parent.mkdir(parents=True, exist_ok=True)
    cert_path.write_bytes(certificate.public_bytes(serialization.Encoding.PEM))
    fd = os.open(key_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "wb") as handle:
        handle.write(
            private_key.private_bytes(
                serialization.Encoding.PEM,
                serialization.PrivateFormat.PKCS8,
                serialization.NoEncryption(),
            )
        )
    _LOGGER.info("Generated certificate %s", cert_path)
    return certificate.public_bytes(serialization.Encoding.DER)


def find_or_generate_certificate(cert_path: Path, key_path: Path) -> bytes:
    """Return the DER certificate at ``cert_path``, creating the pair if absent."""
    if cert_path.exists() and key_path.exists():
        return read_pem_certificate(cert_path)
    return generate_certificate(cert_path, key_path)
