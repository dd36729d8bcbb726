"""
Execution contexts — separate WHAT (pure logic) from HOW (side effects).

  - Pure functions describe WHAT should happen → return Result[T]
  - ExecutionContext describes HOW it happens → locking, logging, timing
  - They are NEVER mixed

Usage:
    def refresh(ctx: OperationContext) -> Result[Metadata]:
        return source.fetch(ctx).flat_map(verify).flat_map(store_bundle)

    result = LoggingExecutionContext(operation="bundle-refresh").execute(lambda: refresh(ctx))
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Protocol, TypeVar, runtime_checkable

from railway.failure import ErrorCode, FailureDescription
from railway.result import Failure, Result

T = TypeVar("T")
logger = logging.getLogger("railway.execution")


# ──────────────────────── Protocol (Interface) ────────────────────────


@runtime_checkable
class ExecutionContext(Protocol):
    """
    Protocol for execution contexts.

    Any class implementing execute(computation) satisfies this protocol
    via structural typing — no explicit inheritance needed.
    """

    def execute(self, computation: Callable[[], Result[T]]) -> Result[T]:
        """Execute a Result-returning computation within this context."""
        ...


# ──────────────────────── NoOp (Testing) ────────────────────────


class NoOpExecutionContext:
    """Passthrough execution context — runs computation without any wrapper."""

    def execute(self, computation: Callable[[], Result[T]]) -> Result[T]:
        return computation()


# ──────────────────────── Logging ────────────────────────


class LoggingExecutionContext:
    """
    Execution context that logs entry, exit, duration, and result state.

    Wraps another context (decorator pattern) to add observability. An
    exception escaping the computation is converted into an UNKNOWN_ERROR
    failure so scheduled jobs never die on a stray raise.

        ctx = LoggingExecutionContext(locked_context, operation="bundle-refresh")
    """

    def __init__(
        self,
        inner: ExecutionContext | None = None,
        operation: str = "unknown",
        log_level: int = logging.INFO,
    ) -> None:
        self._inner = inner or NoOpExecutionContext()
        self._operation = operation
        self._log_level = log_level

    def execute(self, computation: Callable[[], Result[T]]) -> Result[T]:
        logger.log(self._log_level, "[%s] Starting execution", self._operation)
        start = time.monotonic()

        try:
            result = self._inner.execute(computation)
        except Exception as e:
            elapsed = time.monotonic() - start
            logger.error(
                "[%s] Execution failed after %.3fs: %s",
                self._operation,
                elapsed,
                e,
            )
            return Failure(
                FailureDescription(
                    ErrorCode.UNKNOWN_ERROR,
                    f"Execution failed: {e}",
                    e,
                    operation=self._operation,
                )
            )

        elapsed = time.monotonic() - start
        state = "SUCCESS" if result.is_success() else "FAILURE"
        logger.log(
            self._log_level,
            "[%s] Completed in %.3fs — %s",
            self._operation,
            elapsed,
            state,
        )
        return result
