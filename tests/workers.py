"""
Top-level worker functions for process-based concurrency tests.

They live in an importable module (not a test file) so the `spawn` start
method can pickle them by reference.
"""

from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path

from railway.result import Result

from cert_store.adapters.file_lock import FileLocker
from cert_store.adapters.metadata_repository import JsonMetadataRepository
from cert_store.domain.context import OperationContext
from cert_store.domain.metadata import Metadata, UserCertificate
from cert_store.store import Store


def append_entry(record: Metadata) -> Result[Metadata]:
    """Mutator that appends one entry named after the current catalog size."""
    index = len(record.user_certificates)
    now = datetime.now(UTC)
    entry = UserCertificate(
        name=f"entry-{index}",
        path=f"user/entry-{index}.pem",
        added=now,
        fingerprint=f"sha256:{index:064x}",
        subject=f"CN=entry {index}",
        expires=now,
    )
    return Result.success(record.with_certificate(entry))


def increment_in_process(metadata_path: str) -> bool:
    repository = JsonMetadataRepository(Path(metadata_path), FileLocker(poll_interval=0.01), lock_timeout=60.0)
    return repository.update_locked(OperationContext.background(), append_entry).is_success()


def add_certificate_in_process(root: str, pem: bytes, name: str) -> str:
    """Add one certificate through a fresh Store; returns the error code name or "ok"."""
    store = Store(Path(root), locker=FileLocker(poll_interval=0.01), lock_timeout=60.0)
    result = store.add_certificate(pem, name, OperationContext.background())
    return "ok" if result.is_success() else result.error().code.value
