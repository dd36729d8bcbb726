"""
Doctor — read-only diagnostics for a certificate store.

Each check inspects one aspect of the store and reports a HealthCheck with a
pass/warn/fail status, the issues it found and what to run to fix them:

  store structure → metadata integrity → base bundle → combined bundle
    → user certificates → env file

Nothing here writes to the store; the checks read files directly rather than
going through locked updates, so running `doctor` never blocks other callers.
"""

from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path

import structlog

from cert_store.adapters.bundle_source import MIN_CERT_COUNT
from cert_store.adapters.certificate_validator import count_certificates, sha256_hex
from cert_store.adapters.env_file import ENV_VARIABLES
from cert_store.adapters.filesystem import read_bytes
from cert_store.domain.metadata import SCHEMA_VERSION, SOURCE_USER, Metadata
from cert_store.domain.models import HealthCheck, HealthReport, HealthStatus
from cert_store.store import Store

log = structlog.get_logger()


class _Findings:
    """Accumulates issues for one check; the status only ever gets worse."""

    def __init__(self, name: str) -> None:
        self.name = name
        self.status = HealthStatus.PASS
        self.issues: list[str] = []
        self.suggestions: list[str] = []

    def report(self, status: HealthStatus, issue: str, suggestion: str | None = None) -> None:
        if status.severity > self.status.severity:
            self.status = status
        self.issues.append(issue)
        if suggestion is not None and suggestion not in self.suggestions:
            self.suggestions.append(suggestion)

    def check(self) -> HealthCheck:
        return HealthCheck(self.name, self.status, tuple(self.issues), tuple(self.suggestions))


def run_diagnostics(store: Store, now: datetime | None = None) -> HealthReport:
    """Run every check against `store` and collect them into a report."""
    moment = now or datetime.now(UTC)
    record = store.get_metadata().get_or_else(None)
    checks = (
        check_structure(store),
        check_metadata(store),
        check_base_bundle(store, record),
        check_combined_bundle(store, record),
        check_user_certificates(store, record, moment),
        check_env_file(store),
    )
    report = HealthReport(root=str(store.paths.root), checks=checks)
    log.info("doctor.completed", root=report.root, status=report.status.value)
    return report


def check_structure(store: Store) -> HealthCheck:
    findings = _Findings("Store directory structure")
    for directory in store.paths.directories():
        if not directory.exists():
            findings.report(HealthStatus.FAIL, f"directory does not exist: {directory}")
        elif not directory.is_dir():
            findings.report(HealthStatus.FAIL, f"path exists but is not a directory: {directory}")
    if findings.status is HealthStatus.FAIL:
        findings.suggestions.append("run 'certstore init --force' to recreate the store structure")
    return findings.check()


def check_metadata(store: Store) -> HealthCheck:
    findings = _Findings("Metadata integrity")
    loaded = store.get_metadata()
    if loaded.is_failure():
        findings.report(
            HealthStatus.FAIL,
            f"cannot read metadata: {loaded.error().message}",
            "run 'certstore init --force' to recreate metadata",
        )
        return findings.check()
    record = loaded.value()
    if record.schema_version != SCHEMA_VERSION:
        findings.report(HealthStatus.FAIL, f"unknown metadata schema version: {record.schema_version}")
    if not record.base_bundle.sha256:
        findings.report(HealthStatus.FAIL, "base bundle digest missing from metadata", "run 'certstore bundle reset'")
    if not record.combined_bundle.sha256:
        findings.report(HealthStatus.FAIL, "combined bundle digest missing from metadata", "run 'certstore bundle rebuild'")
    return findings.check()


def _bundle_findings(
    name: str,
    path: Path,
    recorded_sha256: str | None,
    repair: str,
) -> tuple[_Findings, int]:
    findings = _Findings(name)
    loaded = read_bytes(path, operation="diagnose bundle")
    if loaded.is_failure():
        findings.report(HealthStatus.FAIL, f"cannot read {path.name}: {loaded.error().message}", repair)
        return findings, 0
    data = loaded.value()
    count = count_certificates(data)
    if count == 0:
        findings.report(HealthStatus.FAIL, f"no valid certificates found in {path.name}", repair)
        return findings, 0
    if recorded_sha256 is not None and sha256_hex(data) != recorded_sha256:
        findings.report(HealthStatus.FAIL, f"{path.name} does not match the digest in metadata", repair)
        findings.suggestions.insert(0, "the file was modified outside of certstore")
    return findings, count


def check_base_bundle(store: Store, record: Metadata | None = None) -> HealthCheck:
    findings, count = _bundle_findings(
        "Base CA bundle",
        store.paths.base_bundle,
        record.base_bundle.sha256 if record else None,
        "run 'certstore bundle reset' to restore the embedded bundle",
    )
    if 0 < count < MIN_CERT_COUNT:
        findings.report(
            HealthStatus.WARN,
            f"base bundle has only {count} certificates (expected {MIN_CERT_COUNT}+)",
            "consider running 'certstore bundle update' or 'certstore bundle reset'",
        )
    return findings.check()


def check_combined_bundle(store: Store, record: Metadata | None = None) -> HealthCheck:
    findings, _ = _bundle_findings(
        "Combined CA bundle",
        store.paths.combined_bundle,
        record.combined_bundle.sha256 if record else None,
        "run 'certstore bundle rebuild'",
    )
    return findings.check()


def check_user_certificates(store: Store, record: Metadata | None, now: datetime) -> HealthCheck:
    findings = _Findings("User certificates")
    if record is None:
        findings.report(HealthStatus.WARN, "cannot list certificates without readable metadata")
        return findings.check()
    missing = expired = 0
    for cert in record.user_certificates:
        if not (store.paths.certs / cert.path).is_file():
            findings.report(HealthStatus.FAIL, f"certificate file missing: {cert.name}")
            missing += 1
        elif cert.is_expired(now):
            findings.report(HealthStatus.WARN, f"certificate expired: {cert.name} (expired {cert.expires.date().isoformat()})")
            expired += 1
    if missing:
        findings.suggestions.append(f"remove the missing certificates or restore their files ({missing} missing)")
    if expired:
        findings.suggestions.append(f"remove or replace expired certificates ({expired} expired)")
    has_user_source = SOURCE_USER in record.combined_bundle.sources
    if has_user_source != bool(record.user_certificates):
        findings.report(
            HealthStatus.WARN,
            "combined bundle sources disagree with the certificate catalog",
            "run 'certstore bundle rebuild'",
        )
    if not record.user_certificates and findings.status is HealthStatus.PASS:
        findings.issues.append("no user certificates in store")
    return findings.check()


def check_env_file(store: Store) -> HealthCheck:
    findings = _Findings("Environment file (env.sh)")
    regenerate = "run 'certstore env' to regenerate env.sh"
    path = store.paths.env_file
    if not path.exists():
        findings.report(HealthStatus.WARN, "env.sh does not exist", regenerate)
        return findings.check()
    loaded = read_bytes(path, operation="diagnose env file")
    if loaded.is_failure():
        findings.report(HealthStatus.FAIL, f"cannot read env.sh: {loaded.error().message}", regenerate)
        return findings.check()
    content = loaded.value().decode("utf-8", errors="replace")
    missing = [name for name in ENV_VARIABLES if name not in content]
    if missing:
        findings.report(HealthStatus.WARN, f"env.sh is missing: {', '.join(missing)}", regenerate)
    bundle = str(store.paths.combined_bundle)
    if bundle not in content and bundle.replace("\\", "/") not in content:
        findings.report(HealthStatus.WARN, "env.sh does not point at the current combined bundle", regenerate)
    return findings.check()
