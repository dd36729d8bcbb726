"""
Ports — Protocol-based interfaces for infrastructure adapters.

  Domain ← Ports (protocols) ← Adapters (implementations)

Each port is a Protocol (structural typing) so adapters satisfy the contract
simply by implementing the methods. The Store only ever talks to these, which
is what lets tests swap the cross-process file lock for an in-memory one or
inject a locker that fails on demand.
"""

from __future__ import annotations

from typing import Callable, Protocol, TypeVar, runtime_checkable

from railway.result import Result

from cert_store.domain.context import OperationContext
from cert_store.domain.metadata import Metadata
from cert_store.domain.models import LockToken, ValidatedCertificate

T = TypeVar("T")


@runtime_checkable
class CertificateValidator(Protocol):
    """
    Port: parse and sanity-check exactly one PEM certificate.

    Fails with INVALID_FORMAT for anything but a single well-formed
    CERTIFICATE block, and with EXPIRED when the certificate is past its
    NotAfter and `allow_expired` is false. No I/O.
    """

    def validate(self, pem: bytes, allow_expired: bool = False) -> Result[ValidatedCertificate]: ...


@runtime_checkable
class Locker(Protocol):
    """
    Port: mutual exclusion on a named resource.

    `acquire` polls until the lock is held, `timeout` elapses (LOCK_TIMEOUT) or
    `ctx` is cancelled (CANCELLED); the context deadline caps `timeout`. One
    attempt is always made, so a free lock is taken even at timeout 0. Not
    reentrant. `release` must tolerate a token that was already released.
    """

    def acquire(self, resource_id: str, ctx: OperationContext, timeout: float) -> Result[LockToken]: ...

    def release(self, token: LockToken) -> None: ...


@runtime_checkable
class BundleSource(Protocol):
    """
    Port: supply raw bytes of a base trust bundle.

    `origin` is recorded as `base_bundle.source` ("embedded" or a URL).
    """

    @property
    def origin(self) -> str: ...

    def fetch(self, ctx: OperationContext) -> Result[bytes]: ...


@runtime_checkable
class MetadataRepository(Protocol):
    """
    Port: load/save the Metadata Record and run locked read-modify-write cycles.

    `update_locked` acquires the lock, loads, applies `mutator`, saves only if
    the mutator succeeded, and releases the lock on every exit path.
    `run_locked` holds the same lock around an arbitrary computation.
    """

    def exists(self) -> bool: ...

    def load(self) -> Result[Metadata]: ...

    def save(self, record: Metadata) -> Result[Metadata]: ...

    def update_locked(
        self,
        ctx: OperationContext,
        mutator: Callable[[Metadata], Result[Metadata]],
        operation: str = "update metadata",
        on_abort: Callable[[], None] | None = None,
        on_commit: Callable[[Metadata], None] | None = None,
    ) -> Result[Metadata]: ...

    def run_locked(self, ctx: OperationContext, computation: Callable[[], Result[T]], operation: str) -> Result[T]: ...
