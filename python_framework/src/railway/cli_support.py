"""
CLI integration — ErrorCode→process exit code mapping and error payloads.

Usage:
    exit_code = ExitCodeMapper.map_error_code(ErrorCode.EXPIRED)  # → 3
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from enum import IntEnum
from typing import Any

from railway.failure import ErrorCode, FailureDescription


class ExitCode(IntEnum):
    """Process exit codes."""

    SUCCESS = 0
    GENERAL = 1
    CONFIG = 2
    CERTIFICATE = 3
    NETWORK = 4


# ──────────────────────── Error Code → Exit Code Mapping ────────────────────────


class ExitCodeMapper:
    """Maps ErrorCode enum values to process exit codes."""

    _CODE_TO_EXIT: dict[ErrorCode, ExitCode] = {
        # Store state / configuration
        ErrorCode.NOT_INITIALIZED: ExitCode.CONFIG,
        ErrorCode.ALREADY_INITIALIZED: ExitCode.CONFIG,
        ErrorCode.CORRUPT_METADATA: ExitCode.CONFIG,
        ErrorCode.CONFIGURATION_ERROR: ExitCode.CONFIG,
        # Certificate problems
        ErrorCode.INVALID_NAME: ExitCode.CERTIFICATE,
        ErrorCode.INVALID_FORMAT: ExitCode.CERTIFICATE,
        ErrorCode.EXPIRED: ExitCode.CERTIFICATE,
        ErrorCode.NOT_FOUND: ExitCode.CERTIFICATE,
        # Network
        ErrorCode.NETWORK_ERROR: ExitCode.NETWORK,
        # Everything else
        ErrorCode.BUNDLE_STALE: ExitCode.GENERAL,
        ErrorCode.LOCK_TIMEOUT: ExitCode.GENERAL,
        ErrorCode.CANCELLED: ExitCode.GENERAL,
        ErrorCode.IO_FAILURE: ExitCode.GENERAL,
        ErrorCode.UNKNOWN_ERROR: ExitCode.GENERAL,
    }

    @classmethod
    def map_error_code(cls, code: ErrorCode) -> ExitCode:
        """Map an ErrorCode to an exit code."""
        return cls._CODE_TO_EXIT.get(code, ExitCode.GENERAL)

    @classmethod
    def map_failure(cls, failure: FailureDescription) -> ExitCode:
        """Map a FailureDescription to an exit code."""
        return cls.map_error_code(failure.code)


# ──────────────────────── Error Response DTO ────────────────────────


@dataclass(frozen=True, slots=True)
class ErrorResponse:
    """
    Machine-readable error body for ``--json`` output.

        {
            "error_code": "EXPIRED",
            "message": "certificate expired on 2024-01-01",
            "operation": "add certificate",
            "path": null,
            "timestamp": "2026-02-17T10:30:00+00:00"
        }
    """

    error_code: str
    message: str
    operation: str
    path: str | None
    timestamp: str

    @staticmethod
    def from_failure(failure: FailureDescription) -> ErrorResponse:
        return ErrorResponse(
            error_code=failure.code.value,
            message=failure.message,
            operation=failure.operation,
            path=failure.path,
            timestamp=failure.timestamp.isoformat(),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
