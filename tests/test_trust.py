"""Tests for certificates, pin stores and the trust password."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from lxd_core.certs import (
    decode_b64_certificate,
    encode_b64_certificate,
    find_or_generate_certificate,
    fingerprint,
    format_fingerprint,
    read_pem_certificate,
)
from lxd_core.errors import ServerCertificateChanged, TrustRejected
from lxd_core.trust import (
    ClientCertificateStore,
    PasswordVerifier,
    ServerCertificateStore,
    validate_host,
)

from .conftest import make_certificate


class TestCertificates:
    """Tests for certificate helpers."""

    def test_fingerprint_is_stable_across_encodings(self, tmp_path: Path) -> None:
        der = make_certificate(tmp_path)

        from_disk = read_pem_certificate(tmp_path / "cert.crt")

        assert from_disk == der
        assert fingerprint(from_disk) == fingerprint(der)
        assert len(fingerprint(der)) == 64

    def test_distinct_certificates_have_distinct_fingerprints(self, tmp_path: Path) -> None:
        first = make_certificate(tmp_path, "first")
        second = make_certificate(tmp_path, "second")

        assert fingerprint(first) != fingerprint(second)

    def test_format_fingerprint(self, tmp_path: Path) -> None:
        der = make_certificate(tmp_path)

        formatted = format_fingerprint(der)

        assert formatted.replace(" ", "") == fingerprint(der)
        assert len(formatted.split(" ")) == 32

    def test_key_file_is_private(self, tmp_path: Path) -> None:
        make_certificate(tmp_path)

        assert (tmp_path / "cert.key").stat().st_mode & 0o777 == 0o600

    def test_find_or_generate_reuses_existing(self, tmp_path: Path) -> None:
        first = find_or_generate_certificate(tmp_path / "c.crt", tmp_path / "c.key")
        second = find_or_generate_certificate(tmp_path / "c.crt", tmp_path / "c.key")

        assert first == second

    def test_b64_round_trip(self, tmp_path: Path) -> None:
        der = make_certificate(tmp_path)

        assert decode_b64_certificate(encode_b64_certificate(der)) == der

    def test_b64_rejects_garbage(self) -> None:
        with pytest.raises(ValueError):
            decode_b64_certificate("not base64!")
        with pytest.raises(ValueError):
            decode_b64_certificate(encode_b64_certificate(b"not a certificate"))


class TestValidateHost:
    """Tests for host identifier validation."""

    @pytest.mark.parametrize("host", ["laptop", "root@laptop", "ci-runner.example.org"])
    def test_accepts(self, host: str) -> None:
        assert validate_host(host) == host

    @pytest.mark.parametrize("host", ["", "../etc/passwd", "a/b", ".hidden", "x" * 256])
    def test_rejects(self, host: str) -> None:
        with pytest.raises(ValueError):
            validate_host(host)


class TestServerCertificateStore:
    """Tests for client-side trust on first use."""

    async def test_first_contact_pins_after_confirmation(self, tmp_path: Path) -> None:
        der = make_certificate(tmp_path)
        store = ServerCertificateStore(tmp_path / "servercerts")
        confirm = MagicMock(return_value=True)

        await store.reconcile("d1", der, confirm)

        confirm.assert_called_once_with("d1", format_fingerprint(der))
        assert store.load("d1") == der
        assert (tmp_path / "servercerts" / "d1.crt").exists()

    async def test_async_confirmation(self, tmp_path: Path) -> None:
        der = make_certificate(tmp_path)
        store = ServerCertificateStore(tmp_path / "servercerts")
        confirm = AsyncMock(return_value=True)

        await store.reconcile("d1", der, confirm)

        confirm.assert_awaited_once()
        assert store.load("d1") == der

    async def test_declined_confirmation_pins_nothing(self, tmp_path: Path) -> None:
        der = make_certificate(tmp_path)
        store = ServerCertificateStore(tmp_path / "servercerts")

        with pytest.raises(TrustRejected):
            await store.reconcile("d1", der, MagicMock(return_value=False))

        assert store.load("d1") is None

    async def test_no_confirmation_callback(self, tmp_path: Path) -> None:
        der = make_certificate(tmp_path)
        store = ServerCertificateStore(tmp_path / "servercerts")

        with pytest.raises(TrustRejected):
            await store.reconcile("d1", der, None)

    async def test_matching_pin_does_not_prompt(self, tmp_path: Path) -> None:
        der = make_certificate(tmp_path)
        store = ServerCertificateStore(tmp_path / "servercerts")
        store.save("d1", der)
        confirm = MagicMock(return_value=True)

        await store.reconcile("d1", der, confirm)

        confirm.assert_not_called()

    async def test_changed_certificate_is_fatal(self, tmp_path: Path) -> None:
        pinned = make_certificate(tmp_path, "pinned")
        impostor = make_certificate(tmp_path, "impostor")
        store = ServerCertificateStore(tmp_path / "servercerts")
        store.save("d1", pinned)
        confirm = MagicMock(return_value=True)

        with pytest.raises(ServerCertificateChanged):
            await store.reconcile("d1", impostor, confirm)

        confirm.assert_not_called()
        assert store.load("d1") == pinned


class TestClientCertificateStore:
    """Tests for daemon-side client pins."""

    async def test_add_and_find(self, tmp_path: Path) -> None:
        der = make_certificate(tmp_path)
        store = ClientCertificateStore(tmp_path / "clientcerts")

        client = await store.add("laptop", der)

        assert client.fingerprint == fingerprint(der)
        assert store.find(fingerprint(der)) == client
        assert store.find(fingerprint(der).upper()) == client
        assert store.is_trusted(der)
        assert len(store) == 1

    async def test_unknown_certificate(self, tmp_path: Path) -> None:
        trusted = make_certificate(tmp_path, "trusted")
        stranger = make_certificate(tmp_path, "stranger")
        store = ClientCertificateStore(tmp_path / "clientcerts")
        await store.add("laptop", trusted)

        assert not store.is_trusted(stranger)
        assert store.find(fingerprint(stranger)) is None

    async def test_entries_sorted_by_host(self, tmp_path: Path) -> None:
        store = ClientCertificateStore(tmp_path / "clientcerts")
        await store.add("zeta", make_certificate(tmp_path, "z"))
        await store.add("alpha", make_certificate(tmp_path, "a"))

        assert [entry.host for entry in store.entries()] == ["alpha", "zeta"]

    async def test_reload_from_disk(self, tmp_path: Path) -> None:
        der = make_certificate(tmp_path)
        await ClientCertificateStore(tmp_path / "clientcerts").add("laptop", der)

        reloaded = ClientCertificateStore(tmp_path / "clientcerts")
        reloaded.load_all()

        assert reloaded.is_trusted(der)
        assert [entry.host for entry in reloaded.entries()] == ["laptop"]

    async def test_rejects_path_like_host(self, tmp_path: Path) -> None:
        store = ClientCertificateStore(tmp_path / "clientcerts")

        with pytest.raises(ValueError):
            await store.add("../escape", make_certificate(tmp_path))


class TestPasswordVerifier:
    """Tests for the scrypt-hashed trust password."""

    def test_no_password_set(self, tmp_path: Path) -> None:
        verifier = PasswordVerifier(tmp_path / "adminpwd")

        assert not verifier.has_password()
        assert not verifier.verify("anything")

    def test_verify(self, tmp_path: Path) -> None:
        verifier = PasswordVerifier(tmp_path / "adminpwd")
        verifier.set_password("s3cret")

        assert verifier.has_password()
        assert verifier.verify("s3cret")
        assert not verifier.verify("S3cret")
        assert not verifier.verify("")

    def test_stored_layout(self, tmp_path: Path) -> None:
        path = tmp_path / "adminpwd"
        PasswordVerifier(path).set_password("s3cret")

        assert len(path.read_bytes()) == 32 + 64
        assert path.stat().st_mode & 0o777 == 0o600

    def test_empty_and_long_passwords(self, tmp_path: Path) -> None:
        verifier = PasswordVerifier(tmp_path / "adminpwd")
        long_password = "p" * 10_000

        verifier.set_password("")
        assert verifier.verify("")
        assert not verifier.verify(long_password)

        verifier.set_password(long_password)
        assert verifier.verify(long_password)
        assert not verifier.verify(long_password[:-1])

    def test_salt_differs_per_set(self, tmp_path: Path) -> None:
        path = tmp_path / "adminpwd"
        verifier = PasswordVerifier(path)
        verifier.set_password("same")
        first = path.read_bytes()
        verifier.set_password("same")

        assert path.read_bytes() != first

    def test_truncated_file(self, tmp_path: Path) -> None:
        path = tmp_path / "adminpwd"
        path.write_bytes(b"short")

        assert not PasswordVerifier(path).verify("short")
