"""
Unit tests for JsonMetadataRepository — load/save and the locked
read-modify-write cycle, including every lock-release path.
"""

from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path
from unittest.mock import MagicMock

import pytest
from railway import ErrorCode, ResultAssertions
from railway.result import Result

from cert_store.adapters.file_lock import FileLocker, InMemoryLocker
from cert_store.adapters.metadata_repository import JsonMetadataRepository
from cert_store.domain.context import OperationContext
from cert_store.domain.metadata import BaseBundleInfo, CombinedBundleInfo, Metadata, UserCertificate
from cert_store.domain.ports import Locker, MetadataRepository
from tests.conftest import FailingLocker

NOW = datetime(2026, 3, 1, tzinfo=UTC)


def _record() -> Metadata:
    return Metadata.new(
        BaseBundleInfo(generated=NOW, sha256="a" * 64, cert_count=3),
        CombinedBundleInfo(generated=NOW, sha256="a" * 64, cert_count=3),
    )


def _append(name: str):
    def mutate(record: Metadata) -> Result[Metadata]:
        entry = UserCertificate(
            name=name, path=f"user/{name}.pem", added=NOW, fingerprint="sha256:00", subject="CN=x", expires=NOW
        )
        return Result.success(record.with_certificate(entry))

    return mutate


@pytest.fixture()
def locker() -> InMemoryLocker:
    return InMemoryLocker(poll_interval=0.01)


@pytest.fixture()
def repository(tmp_path: Path, locker: InMemoryLocker) -> JsonMetadataRepository:
    return JsonMetadataRepository(tmp_path / "metadata.json", locker, lock_timeout=0.2)


@pytest.fixture()
def saved(repository: JsonMetadataRepository) -> JsonMetadataRepository:
    ResultAssertions.assert_success(repository.save(_record()))
    return repository


class TestLoadSave:
    def test_missing_file_is_not_initialized(self, repository: JsonMetadataRepository) -> None:
        """A missing metadata file loads as NOT_INITIALIZED."""
        ResultAssertions.assert_failure(repository.load(), ErrorCode.NOT_INITIALIZED)

    def test_save_then_load_round_trips(self, saved: JsonMetadataRepository) -> None:
        """
        GIVEN a saved record
        WHEN it is loaded back
        THEN the loaded record equals the saved one.
        """
        assert saved.load().value() == _record()

    def test_save_leaves_no_temp_files(self, saved: JsonMetadataRepository) -> None:
        """Only metadata.json remains after a save."""
        assert [p.name for p in saved.path.parent.iterdir()] == ["metadata.json"]

    def test_corrupt_file(self, repository: JsonMetadataRepository) -> None:
        """
        GIVEN a metadata file with invalid JSON
        WHEN load is called
        THEN it fails with CORRUPT_METADATA carrying the file path.
        """
        repository.path.write_text("{ nope")

        error = ResultAssertions.assert_failure(repository.load(), ErrorCode.CORRUPT_METADATA)

        assert error.path == str(repository.path)


class TestUpdateLocked:
    def test_successful_mutation_is_saved(self, saved: JsonMetadataRepository) -> None:
        """
        GIVEN a saved record
        WHEN update_locked appends an entry
        THEN the returned and the persisted record both contain it.
        """
        result = saved.update_locked(OperationContext.background(), _append("corp"))

        assert ResultAssertions.assert_success(result).find("corp") is not None
        assert saved.load().value().find("corp") is not None

    def test_mutator_failure_does_not_save(self, saved: JsonMetadataRepository) -> None:
        """
        GIVEN a mutator that fails with NOT_FOUND
        WHEN update_locked runs it
        THEN the failure propagates with the operation label and the file is byte-identical.
        """
        before = saved.path.read_bytes()

        result = saved.update_locked(
            OperationContext.background(),
            lambda _: Result.failure(ErrorCode.NOT_FOUND, "nope"),
            operation="remove certificate",
        )

        error = ResultAssertions.assert_failure(result, ErrorCode.NOT_FOUND)
        assert error.operation == "remove certificate"
        assert saved.path.read_bytes() == before

    def test_lock_released_after_success_failure_and_exception(self, saved: JsonMetadataRepository) -> None:
        """
        GIVEN three cycles that succeed, fail and raise respectively
        WHEN each finishes
        THEN a following cycle can still acquire the lock (0.2s timeout).
        """
        ctx = OperationContext.background()

        def boom(_: Metadata) -> Result[Metadata]:
            raise RuntimeError("boom")

        saved.update_locked(ctx, _append("a"))
        saved.update_locked(ctx, lambda _: Result.failure(ErrorCode.IO_FAILURE, "x"))
        raised = saved.update_locked(ctx, boom)

        ResultAssertions.assert_failure(raised, ErrorCode.UNKNOWN_ERROR)
        ResultAssertions.assert_success(saved.update_locked(ctx, _append("b")))

    def test_on_abort_runs_on_failure_only(self, saved: JsonMetadataRepository) -> None:
        """
        GIVEN a mutator that fails
        WHEN update_locked runs with both hooks
        THEN on_abort runs once and on_commit never does.
        """
        ctx = OperationContext.background()
        on_abort, on_commit = MagicMock(), MagicMock()

        saved.update_locked(ctx, lambda _: Result.failure(ErrorCode.IO_FAILURE, "x"), on_abort=on_abort, on_commit=on_commit)

        on_abort.assert_called_once_with()
        on_commit.assert_not_called()

    def test_on_commit_receives_saved_record(self, saved: JsonMetadataRepository) -> None:
        """
        GIVEN a mutator that adds "corp"
        WHEN update_locked succeeds
        THEN on_commit receives the saved record and on_abort is not called.
        """
        ctx = OperationContext.background()
        on_abort, on_commit = MagicMock(), MagicMock()

        saved.update_locked(ctx, _append("corp"), on_abort=on_abort, on_commit=on_commit)

        on_abort.assert_not_called()
        assert on_commit.call_args.args[0].find("corp") is not None

    def test_on_abort_runs_when_mutator_raises(self, saved: JsonMetadataRepository) -> None:
        """
        GIVEN a mutator that raises
        WHEN update_locked runs
        THEN on_abort still runs once.
        """
        on_abort = MagicMock()

        def boom(_: Metadata) -> Result[Metadata]:
            raise RuntimeError("boom")

        saved.update_locked(OperationContext.background(), boom, on_abort=on_abort)

        on_abort.assert_called_once_with()

    def test_not_initialized_store(self, repository: JsonMetadataRepository) -> None:
        """
        GIVEN no metadata file
        WHEN update_locked is called
        THEN it fails with NOT_INITIALIZED and writes nothing.
        """
        result = repository.update_locked(OperationContext.background(), _append("x"))

        ResultAssertions.assert_failure(result, ErrorCode.NOT_INITIALIZED)
        assert not repository.path.exists()

    def test_lock_timeout_propagates_without_loading(self, tmp_path: Path) -> None:
        """
        GIVEN a locker whose first acquisition fails
        WHEN update_locked is called
        THEN LOCK_TIMEOUT propagates and the mutator is never called.
        """
        locker = FailingLocker(InMemoryLocker(), fail_on={1})
        repository = JsonMetadataRepository(tmp_path / "metadata.json", locker)
        repository.save(_record())
        mutator = MagicMock()

        result = repository.update_locked(OperationContext.background(), mutator, operation="add certificate")

        error = ResultAssertions.assert_failure(result, ErrorCode.LOCK_TIMEOUT)
        assert error.operation == "add certificate"
        mutator.assert_not_called()

    def test_held_lock_times_out(self, saved: JsonMetadataRepository, locker: InMemoryLocker) -> None:
        """
        GIVEN the metadata lock held by another caller
        WHEN update_locked is called
        THEN it fails with LOCK_TIMEOUT.
        """
        ctx = OperationContext.background()
        token = locker.acquire(str(saved.path), ctx, 1.0).value()

        ResultAssertions.assert_failure(saved.update_locked(ctx, _append("x")), ErrorCode.LOCK_TIMEOUT)
        locker.release(token)

    def test_cancelled_context(self, saved: JsonMetadataRepository) -> None:
        """A cancelled context fails update_locked with CANCELLED."""
        ctx = OperationContext.background()
        ctx.cancel()

        ResultAssertions.assert_failure(saved.update_locked(ctx, _append("x")), ErrorCode.CANCELLED)


class TestRunLocked:
    def test_returns_computation_result(self, saved: JsonMetadataRepository) -> None:
        """
        GIVEN a computation returning Success(7)
        WHEN it runs under run_locked
        THEN its result is returned unchanged.
        """
        result = saved.run_locked(OperationContext.background(), lambda: Result.success(7), "count")

        ResultAssertions.assert_success_value(result, 7)


class TestPortConformance:
    def test_satisfies_repository_port(self, repository: JsonMetadataRepository) -> None:
        """The JSON repository is a structural MetadataRepository."""
        assert isinstance(repository, MetadataRepository)

    def test_lockers_satisfy_locker_port(self, locker: InMemoryLocker) -> None:
        """Both lockers are structural Lockers."""
        assert isinstance(locker, Locker)
        assert isinstance(FileLocker(), Locker)
