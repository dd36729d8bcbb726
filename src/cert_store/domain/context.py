"""
Operation context — cancellation signal plus optional deadline.

Every long-running store operation accepts one. Contexts derived with
`with_timeout` share the parent's cancellation event, so cancelling the parent
cancels every derived context; the effective deadline is the sooner of the two.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field

from railway import ErrorCode
from railway.result import Result


@dataclass(frozen=True, slots=True)
class OperationContext:
    cancel_event: threading.Event = field(default_factory=threading.Event, repr=False, compare=False)
    deadline: float | None = None

    @staticmethod
    def background() -> OperationContext:
        """A context that is never cancelled and has no deadline."""
        return OperationContext()

    def with_timeout(self, seconds: float) -> OperationContext:
        candidate = time.monotonic() + seconds
        deadline = candidate if self.deadline is None else min(self.deadline, candidate)
        return OperationContext(cancel_event=self.cancel_event, deadline=deadline)

    def cancel(self) -> None:
        self.cancel_event.set()

    @property
    def is_cancelled(self) -> bool:
        return self.cancel_event.is_set()

    @property
    def is_expired(self) -> bool:
        return self.deadline is not None and time.monotonic() >= self.deadline

    def remaining(self) -> float | None:
        """Seconds until the deadline (never negative), or None without one."""
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    def ensure_active(self, operation: str) -> Result[OperationContext]:
        """Fail with CANCELLED when the context was cancelled or its deadline passed."""
        if self.is_cancelled:
            return Result.failure(ErrorCode.CANCELLED, "operation cancelled", operation=operation)
        if self.is_expired:
            return Result.failure(ErrorCode.CANCELLED, "deadline exceeded", operation=operation)
        return Result.success(self)
