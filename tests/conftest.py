"""
Shared test fixtures and helpers for the cert-store test suite.

Certificates are generated on the fly with `cryptography` (EC P-256,
self-signed) so tests control subjects and validity windows exactly.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID
from railway import ErrorCode
from railway.result import Result

from cert_store.adapters.bundle_source import StaticBundleSource
from cert_store.adapters.file_lock import FileLocker
from cert_store.domain.context import OperationContext
from cert_store.domain.models import LockToken
from cert_store.domain.ports import Locker
from cert_store.store import Store

BASE_BUNDLE_SIZE = 3


def make_certificate_pem(
    common_name: str = "Test Root CA",
    not_before: datetime | None = None,
    not_after: datetime | None = None,
) -> bytes:
    """Self-signed certificate as PEM bytes; valid from yesterday for a year by default."""
    now = datetime.now(UTC)
    key = ec.generate_private_key(ec.SECP256R1())
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    certificate = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before or now - timedelta(days=1))
        .not_valid_after(not_after or now + timedelta(days=365))
        .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
        .sign(key, hashes.SHA256())
    )
    return certificate.public_bytes(serialization.Encoding.PEM)


def make_expired_certificate_pem(common_name: str = "Expired CA") -> bytes:
    now = datetime.now(UTC)
    return make_certificate_pem(common_name, not_before=now - timedelta(days=30), not_after=now - timedelta(days=1))


def make_bundle(count: int, prefix: str = "Base CA") -> bytes:
    """A PEM bundle of `count` certificates with curl-style comment headers."""
    parts = [f"{prefix} {i}\n".encode() + make_certificate_pem(f"{prefix} {i}") for i in range(count)]
    return b"\n".join(parts)


class FailingLocker:
    """Delegates to `inner` but fails the acquisitions numbered in `fail_on` (1-based)."""

    def __init__(self, inner: Locker, fail_on: set[int]) -> None:
        self._inner = inner
        self._fail_on = fail_on
        self.acquisitions = 0

    def acquire(self, resource_id: str, ctx: OperationContext, timeout: float) -> Result[LockToken]:
        self.acquisitions += 1
        if self.acquisitions in self._fail_on:
            return Result.failure(ErrorCode.LOCK_TIMEOUT, "injected lock timeout", path=resource_id)
        return self._inner.acquire(resource_id, ctx, timeout)

    def release(self, token: LockToken) -> None:
        self._inner.release(token)


@pytest.fixture(scope="session")
def base_bundle() -> bytes:
    """A small base bundle, shared across the session (key generation is slow-ish)."""
    return make_bundle(BASE_BUNDLE_SIZE)


@pytest.fixture()
def ctx() -> OperationContext:
    return OperationContext.background()


@pytest.fixture()
def store_root(tmp_path: Path) -> Path:
    return tmp_path / "store"


@pytest.fixture()
def store(store_root: Path, base_bundle: bytes) -> Store:
    """An uninitialized store over a temp directory with the small base bundle."""
    return Store(store_root, base_source=StaticBundleSource(base_bundle), locker=FileLocker(poll_interval=0.01), lock_timeout=5.0)


@pytest.fixture()
def initialized_store(store: Store, ctx: OperationContext) -> Store:
    result = store.initialize(ctx)
    assert result.is_success(), result
    return store
