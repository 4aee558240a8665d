"""Test suite for the exception hierarchy."""

from session_upload.exceptions import (
    ApiError,
    ChunkProcessingError,
    ContentHashMismatchError,
    DispatchError,
    IncorrectOffsetError,
    LookupNotFoundError,
    PermanentApiError,
    RateLimitedError,
    RetriesExhaustedError,
    SessionUploadError,
    SourceReadError,
    TransientApiError,
)


class TestExceptions:
    """Test exception classes."""

    def test_api_error_basic(self):
        """Test ApiError with basic message."""
        error = ApiError("Test error")
        assert error.message == "Test error"
        assert error.status_code is None
        assert error.response_content is None
        assert error.error_tag is None

    def test_api_error_full(self):
        """Test ApiError with all parameters."""
        error = ApiError("Test error", 409, b"{}", "incorrect_offset")
        assert error.message == "Test error"
        assert error.status_code == 409
        assert error.response_content == b"{}"
        assert error.error_tag == "incorrect_offset"

    def test_api_error_default_message(self):
        """Test ApiError with default message."""
        error = ApiError(status_code=503)
        assert "503" in error.message

    def test_rate_limited(self):
        """Test RateLimitedError carries the delay and reason."""
        error = RateLimitedError(retry_after_seconds=3, reason="too_many_write_operations")
        assert error.retry_after_seconds == 3
        assert error.reason == "too_many_write_operations"
        assert "too_many_write_operations" in error.message

    def test_incorrect_offset(self):
        """Test IncorrectOffsetError carries the remote's offset."""
        error = IncorrectOffsetError(correct_offset=42, status_code=409)
        assert error.correct_offset == 42
        assert error.status_code == 409
        assert "42" in error.message

    def test_hierarchy(self):
        """Test which errors are retryable."""
        for permanent in (ContentHashMismatchError, IncorrectOffsetError, LookupNotFoundError):
            assert issubclass(permanent, PermanentApiError)
        for cls in (TransientApiError, RateLimitedError, PermanentApiError):
            assert issubclass(cls, ApiError)
            assert not issubclass(cls, DispatchError)
        assert not issubclass(RateLimitedError, TransientApiError)
        assert issubclass(DispatchError, SessionUploadError)

    def test_retries_exhausted(self):
        """Test RetriesExhaustedError keeps the last error."""
        last = TransientApiError("gateway timeout")
        error = RetriesExhaustedError("gave up", attempts=3, last_error=last)
        assert error.attempts == 3
        assert error.last_error is last

    def test_dispatch_errors(self):
        """Test dispatcher errors carry their offsets."""
        read_error = SourceReadError("read failed", offset=8)
        assert read_error.offset == 8

        cause = ValueError("boom")
        chunk_error = ChunkProcessingError(16, cause)
        assert chunk_error.chunk_offset == 16
        assert chunk_error.error is cause
        assert str(chunk_error) == "Chunk at offset 16 failed: boom"
