"""Certificate pinning and trust password storage.

Client side, ``ServerCertificateStore`` pins one daemon certificate per
remote name (trust on first use). Daemon side, ``ClientCertificateStore``
holds the client certificates allowed to drive the daemon, keyed by the host
identifier the client chose, and ``PasswordVerifier`` gates adding new ones.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import os
import re
from collections import defaultdict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path

from cryptography.exceptions import InvalidKey
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from .certs import (
    fingerprint,
    format_fingerprint,
    read_pem_certificate,
    write_pem_certificate,
)
from .errors import ServerCertificateChanged, TrustRejected

_LOGGER = logging.getLogger(__name__)

PW_SALT_BYTES = 32
PW_HASH_BYTES = 64
SCRYPT_N = 1 << 14
SCRYPT_R = 8
SCRYPT_P = 1

_HOST_RE = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_.@-]*$")

ConfirmCallback = Callable[[str, str], Awaitable[bool] | bool]


def validate_host(host: str) -> str:
    """Reject host identifiers that could escape the certificate directory."""
    if not _HOST_RE.match(host) or len(host) > 255:
        raise ValueError(f"Invalid host identifier: {host!r}")
    return host


class ServerCertificateStore:
    """Client-side pins, one PEM file per remote in ``cert_dir``."""

    def __init__(self, cert_dir: Path) -> None:
        self._dir = cert_dir
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def path_for(self, remote: str) -> Path:
        return self._dir / f"{validate_host(remote)}.crt"

    def load(self, remote: str) -> bytes | None:
        """Return the pinned DER certificate for ``remote``, if any."""
        path = self.path_for(remote)
        if not path.exists():
            return None
        try:
            return read_pem_certificate(path)
        except ValueError:
            _LOGGER.warning("Error reading the server certificate for %s", remote)
            return None

    def save(self, remote: str, der: bytes) -> None:
        self._dir.mkdir(parents=True, exist_ok=True, mode=0o750)
        write_pem_certificate(self.path_for(remote), der, mode=0o644)
        _LOGGER.info("Pinned server certificate for %s", remote)

    async def reconcile(
        self,
        remote: str,
        observed: bytes,
        confirm: ConfirmCallback | None,
    ) -> None:
        """Check ``observed`` against the pin, pinning it on first contact.

        Raises:
            ServerCertificateChanged: A different certificate is pinned.
            TrustRejected: No pin exists and the operator declined.
        """
        async with self._locks[remote]:
            pinned = self.load(remote)
            if pinned is not None:
                if pinned != observed:
                    raise ServerCertificateChanged(
                        f"Server certificate for {remote} has changed"
                    )
                return

            if confirm is None:
                raise TrustRejected(
                    f"No certificate pinned for {remote} and nobody to confirm it"
                )
            accepted = confirm(remote, format_fingerprint(observed))
            if inspect.isawaitable(accepted):
                accepted = await accepted
            if not accepted:
                raise TrustRejected(f"Server certificate for {remote} NACKed by user")
            self.save(remote, observed)


@dataclass(frozen=True, slots=True)
class TrustedClient:
    """A pinned client certificate."""

    host: str
    der: bytes

    @property
    def fingerprint(self) -> str:
        return fingerprint(self.der)


class ClientCertificateStore:
    """Daemon-side client certificates, one PEM file per host in ``cert_dir``."""

    def __init__(self, cert_dir: Path) -> None:
        self._dir = cert_dir
        self._certs: dict[str, bytes] = {}
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def load_all(self) -> None:
        """Read every ``*.crt`` in the certificate directory."""
        if not self._dir.is_dir():
            return
        for path in sorted(self._dir.glob("*.crt")):
            try:
                self._certs[path.stem] = read_pem_certificate(path)
            except ValueError:
                _LOGGER.warning("Skipping unreadable client certificate %s", path)
        _LOGGER.debug("Loaded %d client certificates", len(self._certs))

    async def add(self, host: str, der: bytes) -> TrustedClient:
        """Pin ``der`` for ``host``, replacing any previous certificate."""
        validate_host(host)
        async with self._locks[host]:
            write_pem_certificate(self._dir / f"{host}.crt", der)
            self._certs[host] = der
        _LOGGER.info("Trusted client %s (%s)", host, fingerprint(der))
        return TrustedClient(host, der)

    def entries(self) -> list[TrustedClient]:
        """All pinned clients, ordered by host."""
        return [TrustedClient(host, self._certs[host]) for host in sorted(self._certs)]

    def find(self, cert_fingerprint: str) -> TrustedClient | None:
        """Return the client whose certificate has ``cert_fingerprint``."""
        wanted = cert_fingerprint.lower()
        for client in self.entries():
            if client.fingerprint == wanted:
                return client
        return None

    def is_trusted(self, der: bytes) -> bool:
        return der in self._certs.values()

    def __len__(self) -> int:
        return len(self._certs)


class PasswordVerifier:
    """Salted scrypt hash of the trust password stored at ``path``.

    File layout: ``PW_SALT_BYTES`` of salt followed by ``PW_HASH_BYTES`` of
    derived key.
    """

    def __init__(self, path: Path) -> None:
        self._path = path

    @staticmethod
    def _kdf(salt: bytes) -> Scrypt:
        return Scrypt(salt=salt, length=PW_HASH_BYTES, n=SCRYPT_N, r=SCRYPT_R, p=SCRYPT_P)

    def has_password(self) -> bool:
        return self._path.exists()

    def set_password(self, password: str) -> None:
        salt = os.urandom(PW_SALT_BYTES)
        key = self._kdf(salt).derive(password.encode("utf-8"))
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self._path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "wb") as handle:
            handle.write(salt + key)
        _LOGGER.info("Trust password updated")

    def verify(self, password: str) -> bool:
        try:
            stored = self._path.read_bytes()
        except FileNotFoundError:
            _LOGGER.debug("verify: no password is set")
            return False
        if len(stored) != PW_SALT_BYTES + PW_HASH_BYTES:
            _LOGGER.warning("Stored trust password has unexpected length %d", len(stored))
            return False
        salt, key = stored[:PW_SALT_BYTES], stored[PW_SALT_BYTES:]
        try:
            self._kdf(salt).verify(password.encode("utf-8"), key)
        except InvalidKey:
            _LOGGER.debug("Bad password received")
            return False
        _LOGGER.debug("Verified the trust password")
        return True
