"""
retry.py - Classification of remote failures.

Every exception raised by a ListingCapability crosses this module
exactly once. Error codes are read duck-typed from the common client
error shapes (``exc.code`` or ``exc.response["Error"]["Code"]``), so no
particular SDK is required.
"""

import asyncio
from typing import Any, Final

from bucket_index.errors import PermissionDeniedError, RemoteError, TransientRemoteError

TRANSIENT_CODES: Final[frozenset[str]] = frozenset(
    {
        "SlowDown",
        "Throttling",
        "ThrottlingException",
        "RequestTimeout",
        "RequestTimeTooSkewed",
        "ServiceUnavailable",
        "InternalError",
        "503",
        "500",
    }
)

PERMISSION_CODES: Final[frozenset[str]] = frozenset(
    {
        "AccessDenied",
        "AllAccessDisabled",
        "InvalidAccessKeyId",
        "SignatureDoesNotMatch",
        "ExpiredToken",
        "InvalidToken",
        "403",
    }
)

# Categories reported in metrics_requests.error_category
ERROR_CATEGORIES: Final[dict[str, str]] = {
    "SlowDown": "SlowDown",
    "Throttling": "SlowDown",
    "ThrottlingException": "SlowDown",
    "RequestTimeout": "ReadTimeout",
    "ServiceUnavailable": "ServiceUnavailable",
    "503": "ServiceUnavailable",
    "InternalError": "InternalError",
    "500": "InternalError",
    "AccessDenied": "AccessDenied",
    "AllAccessDisabled": "AccessDenied",
    "403": "AccessDenied",
    "InvalidAccessKeyId": "InvalidCredentials",
    "SignatureDoesNotMatch": "InvalidCredentials",
    "ExpiredToken": "ExpiredCredentials",
    "InvalidToken": "ExpiredCredentials",
    "NoSuchBucket": "BucketNotFound",
    "NoSuchKey": "ObjectNotFound",
}


def error_code(exc: BaseException) -> str | None:
    """Best-effort extraction of a remote error code."""
    code = getattr(exc, "code", None)
    if isinstance(code, (str, int)):
        return str(code)
    response: Any = getattr(exc, "response", None)
    if isinstance(response, dict):
        error = response.get("Error") or {}
        if error.get("Code") is not None:
            return str(error["Code"])
    return None


def classify_remote_error(exc: BaseException, operation: str | None = None) -> RemoteError:
    """
    Map any failure of a remote call onto the RemoteError taxonomy.

    Already-classified errors pass through unchanged. Permission
    failures keep the remote message verbatim.
    """
    if isinstance(exc, RemoteError):
        return exc

    code = error_code(exc)
    message = str(exc) or type(exc).__name__

    if isinstance(exc, PermissionError) or code in PERMISSION_CODES:
        return PermissionDeniedError(message, operation=operation, code=code)
    if (
        isinstance(exc, (TimeoutError, asyncio.TimeoutError, OSError))
        or code in TRANSIENT_CODES
    ):
        return TransientRemoteError(message, operation=operation, code=code)
    return RemoteError(message, operation=operation, code=code)


def error_category(error: RemoteError) -> str:
    """Category name recorded in the request metrics."""
    if error.code in ERROR_CATEGORIES:
        return ERROR_CATEGORIES[error.code]
    if isinstance(error, PermissionDeniedError):
        return "AccessDenied"
    if isinstance(error, TransientRemoteError):
        return "NetworkError"
    return "Unknown"
