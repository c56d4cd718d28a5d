"""
errors.py - Domain-specific exceptions for bucket_index.

All exceptions inherit from BucketIndexError for unified handling.
Each exception type represents a distinct failure mode.

Budget exhaustion and cancellation are NOT errors: they end a sync
job with the PARTIAL and CANCELLED statuses respectively.
"""

from typing import Any


class BucketIndexError(Exception):
    """Base exception for all bucket_index errors."""

    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def __str__(self) -> str:
        if self.context:
            context_str = ", ".join(f"{k}={v!r}" for k, v in self.context.items())
            return f"{self.message} [{context_str}]"
        return self.message


class InvariantViolationError(BucketIndexError):
    """
    Raised when a local index invariant is violated.

    The batch that triggered it is rolled back. The index for the
    affected prefix should be rebuilt with a forced re-sync.
    """

    def __init__(self, invariant: str, details: str) -> None:
        super().__init__(
            f"Invariant violation: {invariant}. {details}",
            context={"invariant": invariant, "details": details},
        )
        self.invariant = invariant
        self.details = details


InvariantViolation = InvariantViolationError


class SchemaError(BucketIndexError):
    """
    Raised when schema validation fails.

    This includes schema version mismatches and missing index tables.
    """

    def __init__(self, message: str, expected: Any = None, actual: Any = None) -> None:
        context = {}
        if expected is not None:
            context["expected"] = expected
        if actual is not None:
            context["actual"] = actual
        super().__init__(message, context=context)
        self.expected = expected
        self.actual = actual


class DatabaseError(BucketIndexError):
    """
    Raised when a database operation fails unexpectedly.

    This wraps SQLite errors with additional context about
    what operation was being attempted.
    """

    def __init__(
        self, message: str, operation: str | None = None, sql: str | None = None
    ) -> None:
        context = {}
        if operation is not None:
            context["operation"] = operation
        if sql is not None:
            context["sql"] = sql[:200] + "..." if len(sql) > 200 else sql
        super().__init__(message, context=context)
        self.operation = operation
        self.sql = sql


class ValidationError(BucketIndexError):
    """Raised when input validation fails (empty keys, bad options...)."""

    def __init__(
        self, message: str, field: str | None = None, value: Any = None
    ) -> None:
        context = {}
        if field is not None:
            context["field"] = field
        if value is not None:
            context["value"] = repr(value)[:100]
        super().__init__(message, context=context)
        self.field = field
        self.value = value


class RemoteError(BucketIndexError):
    """
    A failure reported by the remote listing capability.

    Remote failures are classified exactly once, when they cross into
    the sync engine. Unclassified failures are fatal for the job.
    """

    retryable = False

    def __init__(
        self,
        message: str,
        operation: str | None = None,
        code: str | None = None,
    ) -> None:
        context = {}
        if operation is not None:
            context["operation"] = operation
        if code is not None:
            context["code"] = code
        super().__init__(message, context=context)
        self.operation = operation
        self.code = code


class TransientRemoteError(RemoteError):
    """Timeout, throttling or network failure. Retried with backoff."""

    retryable = True


class PermissionDeniedError(RemoteError):
    """Access denied or bad credentials. Fatal, surfaced verbatim."""


class JobNotFoundError(BucketIndexError):
    """Raised when a job key has no active sync job."""

    def __init__(self, job_key: Any) -> None:
        super().__init__("No active sync job", context={"job_key": str(job_key)})
        self.job_key = job_key
