"""
Certificate validator adapter — PEM unarmoring + X.509 checks.

Implements the CertificateValidator port using:
  - asn1crypto: PEM unarmoring (block type + DER payload, tolerant of the
    comment text that bundles carry between blocks)
  - cryptography (PyCA): X.509 parsing and field extraction

Pipeline:
  pem bytes
    → asn1crypto: pem.unarmor(multiple=True) → exactly one CERTIFICATE block
    → cryptography: x509.load_der_x509_certificate()
    → expiry check (unless allow_expired)
    → ValidatedCertificate (domain model)

`count_certificates` and `sha256_hex` are the pure helpers the store uses for
bundle metadata and integrity checks.
"""

from __future__ import annotations

import hashlib
import re
from datetime import UTC, datetime
from typing import Callable

import structlog
from asn1crypto import pem
from cryptography import x509
from railway import ErrorCode
from railway.result import Result

from cert_store.domain.models import CertificateDetails, ValidatedCertificate

log = structlog.get_logger()

PEM_CERTIFICATE = "CERTIFICATE"
FINGERPRINT_PREFIX = "sha256:"

_OPERATION = "validate certificate"

# One armored block; the body may not run into the next BEGIN line.
_PEM_BLOCK = re.compile(rb"-----BEGIN ([^\r\n-]+)-----(?:(?!-----BEGIN ).)*?-----END \1-----", re.DOTALL)
_PEM_CERTIFICATE_LABEL = PEM_CERTIFICATE.encode("ascii")


def sha256_hex(data: bytes) -> str:
    """Lowercase hex SHA-256 of `data`."""
    return hashlib.sha256(data).hexdigest()


def fingerprint(der: bytes) -> str:
    return FINGERPRINT_PREFIX + sha256_hex(der)


def count_certificates(data: bytes) -> int:
    """
    Count PEM blocks of type CERTIFICATE whose payload parses as X.509.

    Other block types, unparseable payloads and damaged armor (broken base64,
    a BEGIN without END) are skipped; scanning carries on with the next block.
    """
    count = 0
    for position, match in enumerate(_PEM_BLOCK.finditer(data)):
        if match.group(1) != _PEM_CERTIFICATE_LABEL:
            continue
        try:
            _block_type, _headers, der = pem.unarmor(match.group(0))
            x509.load_der_x509_certificate(der)
        except ValueError as e:
            log.debug("certificate.unparseable_block", position=position, reason=str(e))
            continue
        count += 1
    return count


def _describe(cert: x509.Certificate, der: bytes) -> CertificateDetails:
    return CertificateDetails(
        subject=cert.subject.rfc4514_string(),
        issuer=cert.issuer.rfc4514_string(),
        serial=format(cert.serial_number, "x"),
        fingerprint=fingerprint(der),
        not_before=cert.not_valid_before_utc,
        expires=cert.not_valid_after_utc,
    )


class X509CertificateValidator:
    """
    Validates exactly one PEM-encoded X.509 certificate.

    `now` is injectable so expiry can be tested deterministically.
    """

    def __init__(self, now: Callable[[], datetime] | None = None) -> None:
        self._now = now or (lambda: datetime.now(UTC))

    def validate(self, pem_bytes: bytes, allow_expired: bool = False) -> Result[ValidatedCertificate]:
        return (
            self._single_block(pem_bytes)
            .flat_map(self._parse)
            .flat_map(lambda validated: self._check_expiry(validated, allow_expired))
        )

    def _single_block(self, pem_bytes: bytes) -> Result[bytes]:
        try:
            blocks = list(pem.unarmor(pem_bytes, multiple=True))
        except (TypeError, ValueError) as e:
            return Result.failure(ErrorCode.INVALID_FORMAT, f"no PEM certificate found: {e}", e, operation=_OPERATION)
        if len(blocks) != 1:
            return Result.failure(
                ErrorCode.INVALID_FORMAT,
                f"expected exactly one PEM block, found {len(blocks)}",
                operation=_OPERATION,
            )
        block_type, _headers, der = blocks[0]
        if block_type != PEM_CERTIFICATE:
            return Result.failure(
                ErrorCode.INVALID_FORMAT,
                f"expected a {PEM_CERTIFICATE} block, found {block_type}",
                operation=_OPERATION,
            )
        return Result.success(der)

    def _parse(self, der: bytes) -> Result[ValidatedCertificate]:
        try:
            cert = x509.load_der_x509_certificate(der)
        except ValueError as e:
            return Result.failure(ErrorCode.INVALID_FORMAT, f"not a valid X.509 certificate: {e}", e, operation=_OPERATION)
        return Result.success(ValidatedCertificate(certificate=cert, der=der, details=_describe(cert, der)))

    def _check_expiry(self, validated: ValidatedCertificate, allow_expired: bool) -> Result[ValidatedCertificate]:
        expires = validated.details.expires
        if allow_expired or self._now() <= expires:
            return Result.success(validated)
        return Result.failure(
            ErrorCode.EXPIRED,
            f"certificate {validated.details.subject} expired on {expires.date().isoformat()}",
            operation=_OPERATION,
        )
