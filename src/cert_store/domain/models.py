"""
Domain models — immutable value objects passed between the store and its adapters.

The persisted Metadata Record lives in metadata.py (pydantic, because it is
serialized); everything here is in-memory only and therefore a plain
frozen dataclass.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from cryptography import x509


@dataclass(frozen=True, slots=True)
class CertificateDetails:
    """
    Identity and validity of one X.509 certificate.

    `fingerprint` is `sha256:` + lowercase hex SHA-256 of the DER bytes, so two
    validations of identical bytes always agree.
    """

    subject: str
    issuer: str
    serial: str
    fingerprint: str
    not_before: datetime
    expires: datetime


@dataclass(frozen=True, slots=True)
class ValidatedCertificate:
    """A certificate that passed format (and, unless waived, expiry) checks."""

    certificate: x509.Certificate = field(repr=False)
    der: bytes = field(repr=False)
    details: CertificateDetails


@dataclass(frozen=True, slots=True)
class LockToken:
    """
    Proof of a successful lock acquisition, handed back to `Locker.release`.

    `handle` is whatever the issuing locker needs to unlock (a filelock
    instance, a threading.Lock, ...). Tokens are single-use.
    """

    resource_id: str
    token_id: int
    handle: Any = field(repr=False, compare=False)


@dataclass(frozen=True, slots=True)
class BundleVerification:
    """Outcome of sanity-checking a downloaded base bundle."""

    cert_count: int
    version: str | None = None
    warning: str | None = None


class HealthStatus(Enum):
    """Diagnostic outcome, ordered from best to worst."""

    PASS = "pass"
    WARN = "warn"
    FAIL = "fail"

    @property
    def severity(self) -> int:
        return _SEVERITY[self]


_SEVERITY = {HealthStatus.PASS: 0, HealthStatus.WARN: 1, HealthStatus.FAIL: 2}


@dataclass(frozen=True, slots=True)
class HealthCheck:
    """One diagnostic check with the problems it found and how to fix them."""

    name: str
    status: HealthStatus
    issues: tuple[str, ...] = ()
    suggestions: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class HealthReport:
    """All diagnostic checks for a store; `status` is the worst individual status."""

    root: str
    checks: tuple[HealthCheck, ...]

    @property
    def status(self) -> HealthStatus:
        worst = HealthStatus.PASS
        for check in self.checks:
            if check.status.severity > worst.severity:
                worst = check.status
        return worst

    @property
    def healthy(self) -> bool:
        return self.status is not HealthStatus.FAIL
