"""
Failure description — structured error information for the failure track.

Every failure carries an ErrorCode from the store taxonomy, a human message,
the label of the operation that failed and, when a file was involved, the
path it failed on. Underlying exceptions and nested failures are kept so a
failure can be logged usefully and still be matched on its code.
"""

from __future__ import annotations

import traceback
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum, unique
from typing import Optional


@unique
class ErrorCode(Enum):
    """
    Structured error codes for the failure track.

    Grouped by who can fix them:
    - Store state: NOT_INITIALIZED, ALREADY_INITIALIZED, CORRUPT_METADATA, BUNDLE_STALE
    - Caller input: INVALID_NAME, INVALID_FORMAT, EXPIRED, NOT_FOUND
    - Environment: LOCK_TIMEOUT, CANCELLED, IO_FAILURE, NETWORK_ERROR, CONFIGURATION_ERROR
    """

    # --- Store state ---
    NOT_INITIALIZED = "NOT_INITIALIZED"
    """The store has no metadata record yet."""

    ALREADY_INITIALIZED = "ALREADY_INITIALIZED"
    """Initialization requested on an existing store without force."""

    CORRUPT_METADATA = "CORRUPT_METADATA"
    """Metadata record is unparseable or has an incompatible schema version."""

    BUNDLE_STALE = "BUNDLE_STALE"
    """The catalog change committed but the combined bundle could not be rebuilt."""

    # --- Caller input ---
    INVALID_NAME = "INVALID_NAME"
    """Certificate name is empty or contains path separators / parent segments."""

    INVALID_FORMAT = "INVALID_FORMAT"
    """Input is not a single PEM certificate or fails X.509 parsing."""

    EXPIRED = "EXPIRED"
    """Certificate NotAfter is in the past."""

    NOT_FOUND = "NOT_FOUND"
    """Certificate or store path doesn't exist."""

    # --- Environment ---
    LOCK_TIMEOUT = "LOCK_TIMEOUT"
    """The metadata lock could not be acquired before the deadline."""

    CANCELLED = "CANCELLED"
    """The caller cancelled the operation or its deadline had already passed."""

    IO_FAILURE = "IO_FAILURE"
    """Underlying filesystem / OS error."""

    NETWORK_ERROR = "NETWORK_ERROR"
    """Downloading an upstream bundle failed."""

    CONFIGURATION_ERROR = "CONFIGURATION_ERROR"
    """Invalid settings."""

    UNKNOWN_ERROR = "UNKNOWN_ERROR"
    """Unexpected/unclassified failures."""


@dataclass(frozen=True, slots=True)
class FailureDescription:
    """
    Immutable failure descriptor.

    >>> desc = FailureDescription(ErrorCode.INVALID_NAME, "name must not contain '/'", operation="add certificate")
    >>> desc.code
    <ErrorCode.INVALID_NAME: 'INVALID_NAME'>
    >>> str(desc)
    "add certificate: name must not contain '/'"
    """

    code: ErrorCode
    message: str
    exception: Optional[BaseException] = field(default=None, repr=False)
    operation: str = ""
    path: Optional[str] = None
    cause: Optional[FailureDescription] = field(default=None, repr=False)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    @staticmethod
    def create(
        code: ErrorCode,
        message: str,
        exception: Optional[BaseException] = None,
        *,
        operation: str = "",
        path: object = None,
        cause: Optional[FailureDescription] = None,
    ) -> FailureDescription:
        """Build a descriptor, normalizing ``path`` (str or Path) to a string."""
        return FailureDescription(
            code=code,
            message=message,
            exception=exception,
            operation=operation,
            path=None if path is None else str(path),
            cause=cause,
        )

    def with_operation(self, operation: str) -> FailureDescription:
        """Copy with the operation label set, unless one is already present."""
        if self.operation:
            return self
        return FailureDescription(
            code=self.code,
            message=self.message,
            exception=self.exception,
            operation=operation,
            path=self.path,
            cause=self.cause,
            timestamp=self.timestamp,
        )

    def with_path(self, path: object) -> FailureDescription:
        """Copy with the path set, unless one is already present."""
        if self.path is not None or path is None:
            return self
        return FailureDescription(
            code=self.code,
            message=self.message,
            exception=self.exception,
            operation=self.operation,
            path=str(path),
            cause=self.cause,
            timestamp=self.timestamp,
        )

    def full_stack_trace(self) -> str:
        """Full text including the message, nested causes and exception chain."""
        text = str(self)
        if self.cause is not None:
            text = f"{text}\ncaused by: {self.cause.full_stack_trace()}"
        if self.exception is None:
            return text
        tb = "".join(traceback.format_exception(type(self.exception), self.exception, self.exception.__traceback__))
        return f"{text}\n{tb}"

    def __str__(self) -> str:
        prefix = " ".join(part for part in (self.operation, self.path) if part)
        return f"{prefix}: {self.message}" if prefix else self.message
