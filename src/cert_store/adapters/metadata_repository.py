"""
Metadata repository adapter — JSON file + locked read-modify-write.

Implements the MetadataRepository port. The record lives in one JSON file
that is only ever replaced atomically (temp file + rename). Mutations go
through `update_locked`, the LOCKED UPDATE pattern:

  1. acquire the lock on the metadata path (bounded deadline)
  2. load the current record from disk
  3. apply the mutator; on failure stop here, nothing is written
  4. save the mutated record
  5. release the lock (always, whichever step ended the cycle)

Concurrent cycles from threads or processes serialize on the lock, so the
final record is the composition of every successful mutation.
"""

from __future__ import annotations

from pathlib import Path
from typing import Callable, TypeVar

import structlog
from railway import ErrorCode
from railway.result import Result

from cert_store.adapters.filesystem import atomic_write_bytes, read_bytes
from cert_store.domain.context import OperationContext
from cert_store.domain.metadata import Metadata, Migration, parse_metadata
from cert_store.domain.ports import Locker

T = TypeVar("T")
log = structlog.get_logger()

DEFAULT_LOCK_TIMEOUT = 30.0


class LockedExecutionContext:
    """
    Execution context that holds a lock for the duration of a computation.

    The lock is released on success, on failure and when the computation
    raises; an exception becomes an UNKNOWN_ERROR failure.

        result = repository.locked(ctx, "rebuild bundle").execute(lambda: rebuild(record))
    """

    def __init__(
        self,
        locker: Locker,
        resource_id: str,
        ctx: OperationContext,
        timeout: float,
        operation: str,
    ) -> None:
        self._locker = locker
        self._resource_id = resource_id
        self._ctx = ctx
        self._timeout = timeout
        self._operation = operation

    def execute(self, computation: Callable[[], Result[T]]) -> Result[T]:
        acquired = self._locker.acquire(self._resource_id, self._ctx, self._timeout)
        if acquired.is_failure():
            return acquired.map_failure(lambda err: err.with_operation(self._operation))  # type: ignore[return-value]
        token = acquired.value()
        try:
            return computation()
        except Exception as e:
            log.error("metadata.locked_operation_raised", operation=self._operation, error=str(e))
            return Result.failure(
                ErrorCode.UNKNOWN_ERROR,
                f"unexpected error while holding lock: {e}",
                e,
                operation=self._operation,
                path=self._resource_id,
            )
        finally:
            self._locker.release(token)


class JsonMetadataRepository:
    """
    Metadata Record stored as `metadata.json`, locked via `<path>.lock`.

    `migrations` overrides the schema migration chain (tests use it to
    exercise a multi-step upgrade).
    """

    def __init__(
        self,
        path: Path,
        locker: Locker,
        lock_timeout: float = DEFAULT_LOCK_TIMEOUT,
        migrations: dict[str, tuple[str, Migration]] | None = None,
    ) -> None:
        self._path = path
        self._locker = locker
        self._lock_timeout = lock_timeout
        self._migrations = migrations

    @property
    def path(self) -> Path:
        return self._path

    def exists(self) -> bool:
        return self._path.is_file()

    def load(self) -> Result[Metadata]:
        if not self.exists():
            return Result.failure(
                ErrorCode.NOT_INITIALIZED,
                "store is not initialized (no metadata.json)",
                operation="load metadata",
                path=self._path,
            )
        return (
            read_bytes(self._path, operation="load metadata")
            .flat_map(lambda raw: parse_metadata(raw, self._migrations))
            .map_failure(lambda err: err.with_path(self._path))
        )

    def save(self, record: Metadata) -> Result[Metadata]:
        return (
            atomic_write_bytes(self._path, record.to_json().encode("utf-8"), operation="save metadata")
            .peek(lambda _: log.debug("metadata.saved", path=str(self._path), certificates=len(record.user_certificates)))
            .map(lambda _: record)
        )

    def locked(self, ctx: OperationContext, operation: str) -> LockedExecutionContext:
        return LockedExecutionContext(self._locker, str(self._path), ctx, self._lock_timeout, operation)

    def run_locked(self, ctx: OperationContext, computation: Callable[[], Result[T]], operation: str) -> Result[T]:
        """Run `computation` with the metadata lock held."""
        return self.locked(ctx, operation).execute(computation)

    def update_locked(
        self,
        ctx: OperationContext,
        mutator: Callable[[Metadata], Result[Metadata]],
        operation: str = "update metadata",
        on_abort: Callable[[], None] | None = None,
        on_commit: Callable[[Metadata], None] | None = None,
    ) -> Result[Metadata]:
        """
        Locked read-modify-write of the record.

        `on_abort` runs (lock still held) when the mutator or the save fails,
        so a mutator that touched other files can undo them before anyone else
        sees the store. `on_commit` runs (lock still held) after a successful
        save.
        """

        def cycle() -> Result[Metadata]:
            try:
                result = self.load().flat_map(mutator).flat_map(self.save)
            except Exception:
                if on_abort is not None:
                    on_abort()
                raise
            if result.is_failure():
                if on_abort is not None:
                    on_abort()
            elif on_commit is not None:
                on_commit(result.value())
            return result

        return self.run_locked(ctx, cycle, operation).map_failure(lambda err: err.with_operation(operation))

