"""
Store — the certificate store core.

Orchestrates the on-disk layout, locked metadata updates, user certificate
files and the combined bundle:

  <root>/
    env.sh
    logs/
    certs/
      user/<name>.pem
      bundles/base-bundle.pem
      bundles/combined-bundle.pem
      metadata.json            (+ metadata.json.lock)

Every mutation runs as a locked update on metadata.json. Files a mutation
touches besides the record are snapshotted first and restored, with the lock
still held, when the update fails; so after any failure the disk is as it was
before the call or as it should be after it. The one deliberate exception:
once a certificate add/remove is committed to the catalog, a failed bundle
rebuild is reported as BUNDLE_STALE instead of being undone (`rebuild`
recovers).

Two concurrent adds for the *same* name are last-writer-wins: whichever takes
the lock second owns the file and the catalog entry.
"""

from __future__ import annotations

import shutil
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Callable

import structlog
from railway import ErrorCode, FailureDescription
from railway.result import Result

from cert_store.adapters.bundle_source import EmbeddedBundleSource
from cert_store.adapters.certificate_validator import X509CertificateValidator, count_certificates, sha256_hex
from cert_store.adapters.file_lock import LOCK_SUFFIX, FileLocker
from cert_store.adapters.filesystem import (
    TMP_SUFFIX,
    Snapshot,
    atomic_write_bytes,
    read_bytes,
    remove_best_effort,
    snapshot,
)
from cert_store.adapters.metadata_repository import DEFAULT_LOCK_TIMEOUT, JsonMetadataRepository
from cert_store.domain.context import OperationContext
from cert_store.domain.metadata import (
    PEM_SUFFIX,
    SOURCE_BASE,
    SOURCE_USER,
    BaseBundleInfo,
    CombinedBundleInfo,
    Metadata,
    UserCertificate,
    check_certificate_name,
    user_certificate_path,
)
from cert_store.domain.models import CertificateDetails
from cert_store.domain.ports import BundleSource, CertificateValidator, Locker, MetadataRepository

log = structlog.get_logger()


@dataclass(frozen=True, slots=True)
class StorePaths:
    root: Path

    @property
    def certs(self) -> Path:
        return self.root / "certs"

    @property
    def user(self) -> Path:
        return self.certs / "user"

    @property
    def bundles(self) -> Path:
        return self.certs / "bundles"

    @property
    def base_bundle(self) -> Path:
        return self.bundles / "base-bundle.pem"

    @property
    def combined_bundle(self) -> Path:
        return self.bundles / "combined-bundle.pem"

    @property
    def metadata(self) -> Path:
        return self.certs / "metadata.json"

    @property
    def logs(self) -> Path:
        return self.root / "logs"

    @property
    def env_file(self) -> Path:
        return self.root / "env.sh"

    def user_certificate(self, name: str) -> Path:
        return self.user / f"{name}{PEM_SUFFIX}"

    def directories(self) -> tuple[Path, ...]:
        return (self.root, self.certs, self.user, self.bundles, self.logs)


class _Rollback:
    """Snapshots taken during one locked update, restored newest-first on abort."""

    def __init__(self, reason: str) -> None:
        self._reason = reason
        self._snapshots: list[Snapshot] = []

    def stage(self, path: Path, operation: str) -> Result[Snapshot]:
        return snapshot(path, operation=operation).peek(self._snapshots.append)

    def restore(self) -> None:
        for snap in reversed(self._snapshots):
            log.warning("store.rollback", path=str(snap.path), reason=self._reason)
            snap.restore(self._reason)
        self._snapshots.clear()


class Store:
    """
    A certificate store rooted at `root`.

    Collaborators are injectable: `base_source` supplies base bundle bytes for
    initialize/reset, `validator` checks user certificates, `locker` provides
    the mutual exclusion behind every locked update. A `repository` replaces
    the JSON record at certs/metadata.json (and makes `locker` moot).
    """

    def __init__(
        self,
        root: Path,
        base_source: BundleSource | None = None,
        validator: CertificateValidator | None = None,
        locker: Locker | None = None,
        lock_timeout: float = DEFAULT_LOCK_TIMEOUT,
        now: Callable[[], datetime] | None = None,
        repository: MetadataRepository | None = None,
    ) -> None:
        self._paths = StorePaths(Path(root))
        self._base_source = base_source or EmbeddedBundleSource()
        self._validator = validator or X509CertificateValidator()
        self._now = now or (lambda: datetime.now(UTC))
        self._repository = repository or JsonMetadataRepository(self._paths.metadata, locker or FileLocker(), lock_timeout)

    @property
    def paths(self) -> StorePaths:
        return self._paths

    @property
    def repository(self) -> MetadataRepository:
        return self._repository

    def is_initialized(self) -> bool:
        return self._repository.exists()

    # ──────────────────────── Initialization ────────────────────────

    def initialize(self, ctx: OperationContext, force: bool = False) -> Result[Metadata]:
        """
        Create the layout, install the base bundle and write a fresh record.

        With `force`, an existing store is re-initialized: the catalog is
        emptied and the user certificate files are deleted once the new record
        is committed. The metadata file is written last, so an interrupted
        initialization never blocks a retry.
        """
        operation = "initialize store"
        if not force and self.is_initialized():
            return self._already_initialized(operation)
        return (
            ctx.ensure_active(operation)
            .flat_map(lambda _: self._base_source.fetch(ctx))
            .flat_map(lambda data: self._create_layout(operation).map(lambda _: data))
            .flat_map(
                lambda data: self._repository.run_locked(
                    ctx, lambda: self._initialize_locked(data, ctx, force), operation
                )
            )
            .map_failure(lambda err: err.with_operation(operation))
            .peek(
                lambda record: log.info(
                    "store.initialized",
                    root=str(self._paths.root),
                    base_certificates=record.base_bundle.cert_count,
                    force=force,
                )
            )
        )

    def _initialize_locked(self, data: bytes, ctx: OperationContext, force: bool) -> Result[Metadata]:
        operation = "initialize store"
        if not force and self.is_initialized():
            return self._already_initialized(operation)
        stale = self._user_files() if force else ()
        rollback = _Rollback("failed initialization")
        now = self._now()
        base = BaseBundleInfo(
            generated=now,
            sha256=sha256_hex(data),
            cert_count=count_certificates(data),
            source=self._base_source.origin,
        )
        placeholder = CombinedBundleInfo(generated=now, sha256=base.sha256, cert_count=base.cert_count)
        result = (
            rollback.stage(self._paths.base_bundle, operation)
            .flat_map(lambda _: atomic_write_bytes(self._paths.base_bundle, data, operation="write base bundle"))
            .flat_map(lambda _: self._rebuild_bundle(Metadata.new(base, placeholder), ctx, rollback, user_files=()))
            .flat_map(self._repository.save)
        )
        if result.is_failure():
            rollback.restore()
            return result
        for path in stale:
            remove_best_effort(path, reason="force re-initialize")
        return result

    def _create_layout(self, operation: str) -> Result[StorePaths]:
        def create() -> StorePaths:
            for directory in self._paths.directories():
                directory.mkdir(parents=True, exist_ok=True)
            return self._paths

        return Result.from_computation(
            create, ErrorCode.IO_FAILURE, "cannot create store directories", operation=operation, path=self._paths.root
        )

    def _already_initialized(self, operation: str) -> Result[Metadata]:
        return Result.failure(
            ErrorCode.ALREADY_INITIALIZED,
            "store is already initialized (use force to re-initialize)",
            operation=operation,
            path=self._paths.root,
        )

    # ──────────────────────── User certificates ────────────────────────

    def add_certificate(
        self,
        source: Path | bytes,
        name: str,
        ctx: OperationContext,
        allow_expired: bool = False,
    ) -> Result[UserCertificate]:
        """
        Validate and store a user certificate under `name`, then rebuild.

        An existing entry with the same name is replaced in place. A failed
        catalog update restores the previous file (or removes the new one); a
        failed rebuild after the catalog commit yields BUNDLE_STALE.
        """
        operation = "add certificate"
        return (
            ctx.ensure_active(operation)
            .flat_map(lambda _: check_certificate_name(name, operation))
            .flat_map(lambda _: self._require_initialized(operation))
            .flat_map(lambda _: self._read_source(source, operation))
            .flat_map(lambda pem: self._validator.validate(pem, allow_expired).map(lambda validated: (pem, validated)))
            .map_failure(lambda err: err.with_operation(operation))
            .flat_map(lambda staged: self._commit_certificate(name, staged[0], staged[1].details, ctx))
            .flat_map(lambda entry: self._rebuild_after(entry, ctx, f"certificate {name!r} was added"))
            .peek(lambda entry: log.info("store.certificate_added", name=entry.name, fingerprint=entry.fingerprint))
        )

    def _commit_certificate(
        self, name: str, pem: bytes, details: CertificateDetails, ctx: OperationContext
    ) -> Result[UserCertificate]:
        operation = "add certificate"
        target = self._paths.user_certificate(name)
        rollback = _Rollback(f"failed add of {name!r}")

        def mutate(record: Metadata) -> Result[Metadata]:
            entry = UserCertificate(
                name=name,
                path=user_certificate_path(name),
                added=self._now(),
                fingerprint=details.fingerprint,
                subject=details.subject,
                expires=details.expires,
            )
            return (
                rollback.stage(target, operation)
                .flat_map(lambda _: atomic_write_bytes(target, pem, operation="write certificate"))
                .map(lambda _: record.with_certificate(entry))
            )

        return self._repository.update_locked(ctx, mutate, operation, on_abort=rollback.restore).flat_map(
            lambda record: Result.from_optional(record.find(name), f"certificate {name!r} missing after commit")
        )

    def remove_certificate(self, name: str, ctx: OperationContext) -> Result[UserCertificate]:
        """
        Drop `name` from the catalog, delete its file (best-effort), rebuild.

        Fails with NOT_FOUND, changing nothing, when the name is not cataloged.
        """
        operation = "remove certificate"
        removed: list[UserCertificate] = []

        def mutate(record: Metadata) -> Result[Metadata]:
            entry = record.find(name)
            if entry is None:
                return Result.failure(ErrorCode.NOT_FOUND, f"certificate {name!r} not found", operation=operation)
            removed.append(entry)
            return Result.success(record.without_certificate(name))

        def delete_file(_: Metadata) -> None:
            remove_best_effort(self._paths.user_certificate(name), reason="certificate removed")

        return (
            ctx.ensure_active(operation)
            .flat_map(lambda _: check_certificate_name(name, operation))
            .flat_map(lambda _: self._require_initialized(operation))
            .flat_map(lambda _: self._repository.update_locked(ctx, mutate, operation, on_commit=delete_file))
            .map(lambda _: removed[0])
            .flat_map(lambda entry: self._rebuild_after(entry, ctx, f"certificate {name!r} was removed"))
            .peek(lambda entry: log.info("store.certificate_removed", name=entry.name))
        )

    def list_certificates(self) -> Result[tuple[UserCertificate, ...]]:
        return self.get_metadata().map(lambda record: record.user_certificates)

    def get_certificate_info(self, name: str) -> Result[UserCertificate]:
        return self.get_metadata().flat_map(
            lambda record: Result.from_optional(record.find(name), f"certificate {name!r} not found").map_failure(
                lambda err: err.with_operation("inspect certificate")
            )
        )

    def get_metadata(self) -> Result[Metadata]:
        return self._repository.load()

    # ──────────────────────── Bundles ────────────────────────

    def reset_base_bundle(self, ctx: OperationContext) -> Result[Metadata]:
        """Put the original base bundle back (origin reset, version cleared) and rebuild."""
        operation = "reset base bundle"
        return (
            ctx.ensure_active(operation)
            .flat_map(lambda _: self._require_initialized(operation))
            .flat_map(lambda _: self._base_source.fetch(ctx))
            .flat_map(lambda data: self._replace_base(data, self._base_source.origin, None, ctx, operation))
        )

    def update_base_bundle(
        self,
        data: bytes,
        origin: str,
        ctx: OperationContext,
        version: str | None = None,
    ) -> Result[Metadata]:
        """Install caller-supplied base bundle bytes (e.g. a verified download) and rebuild."""
        operation = "update base bundle"
        return (
            ctx.ensure_active(operation)
            .flat_map(lambda _: self._require_initialized(operation))
            .flat_map(lambda _: self._replace_base(data, origin, version, ctx, operation))
        )

    def _replace_base(
        self,
        data: bytes,
        origin: str,
        version: str | None,
        ctx: OperationContext,
        operation: str,
    ) -> Result[Metadata]:
        rollback = _Rollback(operation)

        def mutate(record: Metadata) -> Result[Metadata]:
            info = BaseBundleInfo(
                generated=self._now(),
                sha256=sha256_hex(data),
                cert_count=count_certificates(data),
                source=origin,
                version=version,
            )
            return (
                rollback.stage(self._paths.base_bundle, operation)
                .flat_map(lambda _: atomic_write_bytes(self._paths.base_bundle, data, operation="write base bundle"))
                .flat_map(lambda _: self._rebuild_bundle(record.with_base_bundle(info), ctx, rollback))
            )

        return self._repository.update_locked(ctx, mutate, operation, on_abort=rollback.restore).peek(
            lambda record: log.info(
                "store.base_bundle_replaced",
                source=record.base_bundle.source,
                certificates=record.base_bundle.cert_count,
            )
        )

    def rebuild(self, ctx: OperationContext) -> Result[Metadata]:
        """Regenerate the combined bundle from disk. Idempotent; recovers BUNDLE_STALE."""
        operation = "rebuild bundle"
        rollback = _Rollback(operation)
        return (
            ctx.ensure_active(operation)
            .flat_map(lambda _: self._require_initialized(operation))
            .flat_map(
                lambda _: self._repository.update_locked(
                    ctx,
                    lambda record: self._rebuild_bundle(record, ctx, rollback),
                    operation,
                    on_abort=rollback.restore,
                )
            )
        )

    def _rebuild_after(self, entry: UserCertificate, ctx: OperationContext, what: str) -> Result[UserCertificate]:
        rebuilt = self.rebuild(ctx)
        if rebuilt.is_success():
            return Result.success(entry)
        cause = rebuilt.error()
        log.error("store.bundle_stale", name=entry.name, error=str(cause))
        return Result.failure_from(
            FailureDescription.create(
                ErrorCode.BUNDLE_STALE,
                f"{what} but the combined bundle could not be rebuilt ({cause.message}); run a rebuild to recover",
                operation="rebuild bundle",
                path=self._paths.combined_bundle,
                cause=cause,
            )
        )

    def _rebuild_bundle(
        self,
        record: Metadata,
        ctx: OperationContext,
        rollback: _Rollback,
        user_files: tuple[Path, ...] | None = None,
    ) -> Result[Metadata]:
        """
        Concatenate base bundle + user certificate files into the combined bundle.

        Called with the metadata lock held. User files are taken in file-name
        order, raw bytes, no re-encoding or de-duplication. Returns `record`
        with fresh combined_bundle info; saving it is the caller's job.
        """
        operation = "rebuild bundle"
        files = self._user_files() if user_files is None else user_files
        return (
            ctx.ensure_active(operation)
            .flat_map(lambda _: read_bytes(self._paths.base_bundle, operation=operation))
            .flat_map(
                lambda base: Result.all_of([read_bytes(path, operation=operation) for path in files]).map(
                    lambda parts: b"".join([base, *parts])
                )
            )
            .flat_map(
                lambda combined: rollback.stage(self._paths.combined_bundle, operation)
                .flat_map(lambda _: atomic_write_bytes(self._paths.combined_bundle, combined, operation=operation))
                .map(
                    lambda _: record.with_combined_bundle(
                        CombinedBundleInfo(
                            generated=self._now(),
                            sha256=sha256_hex(combined),
                            cert_count=count_certificates(combined),
                            sources=(SOURCE_BASE, SOURCE_USER) if files else (SOURCE_BASE,),
                        )
                    )
                )
            )
            .peek(
                lambda rebuilt: log.debug(
                    "store.bundle_rebuilt",
                    certificates=rebuilt.combined_bundle.cert_count,
                    user_files=len(files),
                )
            )
        )

    def _user_files(self) -> tuple[Path, ...]:
        """`*.pem` regular files in certs/user, sorted by file name."""
        if not self._paths.user.is_dir():
            return ()
        return tuple(
            sorted(
                (p for p in self._paths.user.iterdir() if p.suffix == PEM_SUFFIX and p.is_file()),
                key=lambda p: p.name,
            )
        )

    # ──────────────────────── Maintenance ────────────────────────

    def clean_temporary_files(self, ctx: OperationContext) -> Result[tuple[Path, ...]]:
        """
        Delete leftover `*.tmp` files and stale `*.lock` files.

        Runs under the metadata lock so no in-flight write loses its temp file;
        the metadata lock sidecar itself is kept.
        """
        operation = "clean store"
        if not self._paths.root.is_dir():
            return Result.failure(ErrorCode.NOT_FOUND, "store directory does not exist", operation=operation, path=self._paths.root)

        def sweep() -> Result[tuple[Path, ...]]:
            keep = Path(str(self._paths.metadata) + LOCK_SUFFIX)
            candidates = [
                p
                for p in self._paths.root.rglob("*")
                if p.is_file() and (p.name.endswith(TMP_SUFFIX) or (p.name.endswith(LOCK_SUFFIX) and p != keep))
            ]
            removed = tuple(p for p in candidates if remove_best_effort(p, reason="clean"))
            log.info("store.cleaned", removed=len(removed))
            return Result.success(removed)

        if not self._paths.certs.is_dir():
            return sweep()
        return self._repository.run_locked(ctx, sweep, operation)

    def destroy(self) -> Result[Path]:
        """Delete the whole store directory."""
        operation = "remove store"
        root = self._paths.root
        if not self._paths.certs.is_dir() and not self.is_initialized():
            return Result.failure(ErrorCode.NOT_FOUND, "not a certificate store", operation=operation, path=root)

        def remove() -> Path:
            shutil.rmtree(root)
            log.warning("store.removed", root=str(root))
            return root

        return Result.from_computation(remove, ErrorCode.IO_FAILURE, "cannot remove store", operation=operation, path=root)

    # ──────────────────────── Helpers ────────────────────────

    def _require_initialized(self, operation: str) -> Result[StorePaths]:
        if self.is_initialized():
            return Result.success(self._paths)
        return Result.failure(
            ErrorCode.NOT_INITIALIZED,
            "store is not initialized; run 'certstore init' first",
            operation=operation,
            path=self._paths.root,
        )

    def _read_source(self, source: Path | bytes, operation: str) -> Result[bytes]:
        if isinstance(source, (bytes, bytearray)):
            return Result.success(bytes(source))
        return read_bytes(Path(source), operation=operation)
