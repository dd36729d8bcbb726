"""
Filesystem helpers — atomic writes, Result-returning reads, best-effort removal.

Every persistent write in the store goes through `atomic_write_bytes`: the
bytes land in a temp file in the target's directory, are fsynced, then
`os.replace`d over the target. Readers therefore see the old file or the new
one, never a truncated mix.
"""

from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass
from pathlib import Path

import structlog
from railway import ErrorCode
from railway.result import Result

log = structlog.get_logger()

TMP_SUFFIX = ".tmp"


def atomic_write_bytes(path: Path, data: bytes, operation: str = "write file") -> Result[Path]:
    try:
        fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=TMP_SUFFIX)
    except OSError as e:
        return Result.failure(ErrorCode.IO_FAILURE, f"cannot create temp file: {e}", e, operation=operation, path=path)
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(data)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, path)
    except OSError as e:
        remove_best_effort(Path(tmp_name), reason="abandoned temp file")
        return Result.failure(ErrorCode.IO_FAILURE, f"atomic write failed: {e}", e, operation=operation, path=path)
    return Result.success(path)


def read_bytes(path: Path, operation: str = "read file") -> Result[bytes]:
    """Read a whole file; a missing file is NOT_FOUND, anything else IO_FAILURE."""
    try:
        return Result.success(path.read_bytes())
    except FileNotFoundError as e:
        return Result.failure(ErrorCode.NOT_FOUND, "file does not exist", e, operation=operation, path=path)
    except OSError as e:
        return Result.failure(ErrorCode.IO_FAILURE, f"cannot read file: {e}", e, operation=operation, path=path)


def remove_best_effort(path: Path, reason: str) -> bool:
    """
    Delete `path`, logging instead of failing.

    Returns True when the file is gone afterwards (including when it never
    existed). Used for temp files, rollbacks and removed certificates, none of
    which the authoritative state depends on.
    """
    try:
        path.unlink()
    except FileNotFoundError:
        log.debug("filesystem.already_removed", path=str(path), reason=reason)
        return True
    except OSError as e:
        log.warning("filesystem.remove_failed", path=str(path), reason=reason, error=str(e))
        return False
    log.debug("filesystem.removed", path=str(path), reason=reason)
    return True


@dataclass(frozen=True, slots=True)
class Snapshot:
    """Bytes of a file before a change (None when it didn't exist), for rollback."""

    path: Path
    content: bytes | None = None

    def restore(self, reason: str) -> None:
        """Best-effort rollback to the captured state."""
        if self.content is None:
            remove_best_effort(self.path, reason=reason)
            return
        atomic_write_bytes(self.path, self.content, operation="rollback").peek_failure(
            lambda err: log.warning("filesystem.restore_failed", path=str(self.path), reason=reason, error=str(err))
        )


def snapshot(path: Path, operation: str = "read file") -> Result[Snapshot]:
    try:
        return Result.success(Snapshot(path, path.read_bytes()))
    except FileNotFoundError:
        return Result.success(Snapshot(path))
    except OSError as e:
        return Result.failure(ErrorCode.IO_FAILURE, f"cannot read file: {e}", e, operation=operation, path=path)
