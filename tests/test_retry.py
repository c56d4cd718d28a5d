"""
test_retry.py - Tests for remote error classification and backoff.
"""

import asyncio

import pytest

from bucket_index.errors import (
    PermissionDeniedError,
    RemoteError,
    TransientRemoteError,
    ValidationError,
)
from bucket_index.sync.jobs import SyncOptions
from bucket_index.sync.retry import classify_remote_error, error_category, error_code


class ClientError(Exception):
    """Shape of a typical SDK client error."""

    def __init__(self, code, message):
        super().__init__(message)
        self.response = {"Error": {"Code": code, "Message": message}}


class TestClassification:

    @pytest.mark.parametrize("code", ["SlowDown", "Throttling", "RequestTimeout", "ServiceUnavailable", "InternalError"])
    def test_transient_codes(self, code):
        error = classify_remote_error(ClientError(code, "try later"), "ListObjectsV2")
        assert isinstance(error, TransientRemoteError)
        assert error.retryable is True
        assert error.code == code

    @pytest.mark.parametrize("code", ["AccessDenied", "InvalidAccessKeyId", "SignatureDoesNotMatch", "ExpiredToken"])
    def test_permission_codes(self, code):
        error = classify_remote_error(ClientError(code, "Access Denied"))
        assert isinstance(error, PermissionDeniedError)
        assert error.retryable is False
        assert error.message == "Access Denied"

    def test_builtin_exceptions(self):
        assert isinstance(classify_remote_error(TimeoutError()), TransientRemoteError)
        assert isinstance(classify_remote_error(asyncio.TimeoutError()), TransientRemoteError)
        assert isinstance(classify_remote_error(ConnectionResetError("reset")), TransientRemoteError)
        assert isinstance(classify_remote_error(PermissionError("nope")), PermissionDeniedError)

    def test_unknown_failure_is_fatal(self):
        error = classify_remote_error(ClientError("NoSuchBucket", "gone"))
        assert type(error) is RemoteError
        assert error.retryable is False
        assert error_category(error) == "BucketNotFound"

    def test_classified_errors_pass_through(self):
        original = TransientRemoteError("slow", code="SlowDown")
        assert classify_remote_error(original) is original

    def test_error_code_from_attribute(self):
        class CodedError(Exception):
            code = "SlowDown"

        assert error_code(CodedError()) == "SlowDown"
        assert error_code(ValueError("x")) is None

    def test_error_categories(self):
        assert error_category(TransientRemoteError("x", code="SlowDown")) == "SlowDown"
        assert error_category(TransientRemoteError("x")) == "NetworkError"
        assert error_category(PermissionDeniedError("x")) == "AccessDenied"


class TestSyncOptions:

    def test_backoff_doubles_and_caps(self):
        options = SyncOptions(retry_base_delay=0.5, retry_max_delay=3.0)
        assert [options.backoff_delay(a) for a in range(5)] == [0.5, 1.0, 2.0, 3.0, 3.0]

    @pytest.mark.parametrize(
        "kwargs",
        [{"max_requests": -1}, {"page_size": 0}, {"page_size": 1001}, {"max_retries": -1}],
    )
    def test_invalid_options(self, kwargs):
        with pytest.raises(ValidationError):
            SyncOptions(**kwargs).validate()


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
