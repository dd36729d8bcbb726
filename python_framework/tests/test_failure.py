"""Tests for FailureDescription and ErrorCode."""

import pytest

from railway import ErrorCode, FailureDescription


class TestErrorCode:
    def test_store_taxonomy_is_complete(self):
        names = {code.name for code in ErrorCode}
        assert {
            "NOT_INITIALIZED",
            "ALREADY_INITIALIZED",
            "INVALID_NAME",
            "INVALID_FORMAT",
            "EXPIRED",
            "NOT_FOUND",
            "CORRUPT_METADATA",
            "LOCK_TIMEOUT",
            "CANCELLED",
            "IO_FAILURE",
            "BUNDLE_STALE",
        } <= names

    def test_error_code_values_match_names(self):
        for code in ErrorCode:
            assert code.value == code.name


class TestFailureDescription:
    def test_creation_with_code_and_message(self):
        desc = FailureDescription(ErrorCode.EXPIRED, "certificate expired")
        assert desc.code == ErrorCode.EXPIRED
        assert desc.message == "certificate expired"
        assert desc.exception is None
        assert desc.operation == ""
        assert desc.path is None
        assert desc.cause is None

    def test_factory_normalizes_path(self, tmp_path):
        desc = FailureDescription.create(ErrorCode.IO_FAILURE, "boom", path=tmp_path / "a.pem")
        assert desc.path == str(tmp_path / "a.pem")

    def test_immutability(self):
        desc = FailureDescription(ErrorCode.NOT_FOUND, "test")
        with pytest.raises(AttributeError):
            desc.message = "changed"  # type: ignore

    def test_timestamp_is_utc(self):
        assert FailureDescription(ErrorCode.NOT_FOUND, "test").timestamp.tzinfo is not None

    def test_str_without_context(self):
        assert str(FailureDescription(ErrorCode.NOT_FOUND, "gone")) == "gone"

    def test_str_with_operation_and_path(self):
        desc = FailureDescription.create(
            ErrorCode.IO_FAILURE, "permission denied", operation="write bundle", path="/s/combined.pem"
        )
        assert str(desc) == "write bundle /s/combined.pem: permission denied"

    def test_full_stack_trace_without_exception(self):
        assert FailureDescription(ErrorCode.NOT_FOUND, "just a message").full_stack_trace() == "just a message"

    def test_full_stack_trace_includes_cause_and_exception(self):
        try:
            raise OSError("disk full")
        except OSError as e:
            inner = FailureDescription(ErrorCode.IO_FAILURE, "write failed", e)
        outer = FailureDescription.create(ErrorCode.BUNDLE_STALE, "bundle is stale", cause=inner)
        trace = outer.full_stack_trace()
        assert "bundle is stale" in trace
        assert "caused by: write failed" in trace
        assert "disk full" in trace
