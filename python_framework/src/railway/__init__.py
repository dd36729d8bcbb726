"""
Railway-Oriented Programming (ROP) Framework for Python.

Explicit, composable, functional error handling — no exceptions in business logic.

    from railway import Result, ErrorCode

    def check_name(name: str) -> Result[str]:
        if "/" in name:
            return Result.failure(ErrorCode.INVALID_NAME, "name must not contain '/'")
        return Result.success(name)

    result = (
        Result.success("corp")
        .flat_map(check_name)
        .map(lambda name: f"user/{name}.pem")
    )
"""

from railway.result import Result, Success, Failure
from railway.failure import ErrorCode, FailureDescription
from railway.execution import (
    ExecutionContext,
    NoOpExecutionContext,
    LoggingExecutionContext,
)
from railway.assertions import ResultAssertions

__all__ = [
    "Result",
    "Success",
    "Failure",
    "ErrorCode",
    "FailureDescription",
    "ExecutionContext",
    "NoOpExecutionContext",
    "LoggingExecutionContext",
    "ResultAssertions",
]

__version__ = "1.1.0"
