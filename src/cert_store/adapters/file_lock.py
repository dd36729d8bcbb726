"""
Locker adapters — cross-process advisory file lock and an in-process equivalent.

FileLocker locks the sidecar `<resource>.lock` with the `filelock` library
(flock on POSIX, msvcrt on Windows). The lock is cooperative: it excludes
other holders that use this mechanism, not arbitrary writers.

Acquisition is a poll loop: try without blocking, then wait one poll interval
on the context's cancellation event, until the lock is held, the effective
deadline passes (LOCK_TIMEOUT) or the context is cancelled (CANCELLED). Every
acquisition opens its own lock instance, so two callers in the same process
exclude each other just like two processes do.
"""

from __future__ import annotations

import itertools
import threading
import time
from abc import ABC, abstractmethod
from typing import Any, Callable

import structlog
from filelock import FileLock, Timeout
from railway import ErrorCode
from railway.result import Result

from cert_store.domain.context import OperationContext
from cert_store.domain.models import LockToken

log = structlog.get_logger()

LOCK_SUFFIX = ".lock"
DEFAULT_POLL_INTERVAL = 0.1

_OPERATION = "acquire lock"


def lock_path(resource_id: str) -> str:
    return resource_id + LOCK_SUFFIX


class _PollingLocker(ABC):
    """Shared acquisition loop and token bookkeeping."""

    def __init__(self, poll_interval: float = DEFAULT_POLL_INTERVAL) -> None:
        self._poll_interval = poll_interval
        self._ids = itertools.count(1)
        self._held: dict[int, LockToken] = {}
        self._guard = threading.Lock()

    @abstractmethod
    def _try_acquire(self, resource_id: str) -> Any | None:
        """Return a handle when the lock was taken, None when it is busy."""

    @abstractmethod
    def _unlock(self, handle: Any) -> None: ...

    def acquire(self, resource_id: str, ctx: OperationContext, timeout: float) -> Result[LockToken]:
        deadline = time.monotonic() + timeout
        if ctx.deadline is not None:
            deadline = min(deadline, ctx.deadline)
        attempts = 0
        while True:
            if ctx.is_cancelled:
                log.info("lock.cancelled", resource=resource_id, attempts=attempts)
                return Result.failure(ErrorCode.CANCELLED, "cancelled while waiting for lock", operation=_OPERATION, path=lock_path(resource_id))
            attempts += 1
            try:
                handle = self._try_acquire(resource_id)
            except OSError as e:
                return Result.failure(ErrorCode.IO_FAILURE, f"cannot open lock file: {e}", e, operation=_OPERATION, path=lock_path(resource_id))
            if handle is not None:
                return Result.success(self._issue(resource_id, handle, attempts))
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                log.warning("lock.timeout", resource=resource_id, timeout=timeout, attempts=attempts)
                return Result.failure(
                    ErrorCode.LOCK_TIMEOUT,
                    f"could not acquire lock within {timeout:.1f}s",
                    operation=_OPERATION,
                    path=lock_path(resource_id),
                )
            ctx.cancel_event.wait(min(self._poll_interval, remaining))

    def release(self, token: LockToken) -> None:
        with self._guard:
            held = self._held.pop(token.token_id, None)
        if held is None:
            log.warning("lock.release_unheld", resource=token.resource_id, token=token.token_id)
            return
        self._unlock(held.handle)
        log.debug("lock.released", resource=token.resource_id, token=token.token_id)

    def _issue(self, resource_id: str, handle: Any, attempts: int) -> LockToken:
        token = LockToken(resource_id=resource_id, token_id=next(self._ids), handle=handle)
        with self._guard:
            self._held[token.token_id] = token
        log.debug("lock.acquired", resource=resource_id, token=token.token_id, attempts=attempts)
        return token


class FileLocker(_PollingLocker):
    """Advisory lock on `<resource_id>.lock`, shared across processes."""

    def __init__(self, poll_interval: float = DEFAULT_POLL_INTERVAL, lock_factory: Callable[[str], FileLock] | None = None) -> None:
        super().__init__(poll_interval)
        self._lock_factory = lock_factory or (lambda path: FileLock(path, thread_local=False))

    def _try_acquire(self, resource_id: str) -> FileLock | None:
        lock = self._lock_factory(lock_path(resource_id))
        try:
            lock.acquire(blocking=False)
        except Timeout:
            return None
        return lock

    def _unlock(self, handle: FileLock) -> None:
        handle.release(force=True)


class InMemoryLocker(_PollingLocker):
    """
    threading.Lock per resource id.

    For single-process embedding and tests; provides no exclusion between
    processes.
    """

    def __init__(self, poll_interval: float = DEFAULT_POLL_INTERVAL) -> None:
        super().__init__(poll_interval)
        self._locks: dict[str, threading.Lock] = {}

    def _try_acquire(self, resource_id: str) -> threading.Lock | None:
        with self._guard:
            lock = self._locks.setdefault(resource_id, threading.Lock())
        return lock if lock.acquire(blocking=False) else None

    def _unlock(self, handle: threading.Lock) -> None:
        handle.release()
