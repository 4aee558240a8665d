"""
Global session_upload exception classes.

API errors mirror the error classes of the remote session protocol so callers can tell
retryable failures from permanent ones.
"""

from typing import Optional


class SessionUploadError(Exception):
    """Base class for all errors raised by session_upload."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ApiError(SessionUploadError):
    """
    Exception raised when the remote store answers a request with an error.

    Attributes:
        message (str): Main message of the exception
        status_code (int): HTTP status code of response indicating an error
        response_content (bytes): Content of response indicating an error
        error_tag (str): Protocol error tag (e.g. "incorrect_offset"), if any
    """

    def __init__(
        self,
        message: Optional[str] = None,
        status_code: Optional[int] = None,
        response_content: Optional[bytes] = None,
        error_tag: Optional[str] = None,
    ):
        default_message = f"Communication with remote store failed with status {status_code}"
        super().__init__(message or default_message)
        self.status_code = status_code
        self.response_content = response_content
        self.error_tag = error_tag


class TransientApiError(ApiError):
    """Network failure or server-side (5xx) error. Worth retrying with backoff."""

    pass


class RateLimitedError(ApiError):
    """The remote asked us to wait ``retry_after_seconds`` before trying again."""

    def __init__(
        self,
        message: Optional[str] = None,
        retry_after_seconds: float = 0,
        reason: str = "too_many_requests",
        **kwargs,
    ):
        message = message or f"Rate limited ({reason}), retry after {retry_after_seconds}s"
        super().__init__(message, **kwargs)
        self.retry_after_seconds = retry_after_seconds
        self.reason = reason


class PermanentApiError(ApiError):
    """Conflict, invalid session, quota and similar errors. Never retried."""

    pass


class ContentHashMismatchError(PermanentApiError):
    """The content hash sent with a chunk does not match the bytes the remote received."""

    pass


class IncorrectOffsetError(PermanentApiError):
    """The offset sent does not match the remote's view of the session."""

    def __init__(
        self,
        message: Optional[str] = None,
        correct_offset: Optional[int] = None,
        **kwargs,
    ):
        message = message or f"Incorrect offset, remote expects {correct_offset}"
        super().__init__(message, **kwargs)
        self.correct_offset = correct_offset


class LookupNotFoundError(PermanentApiError):
    """The requested path or session does not exist."""

    pass


class RetriesExhaustedError(SessionUploadError):
    """A retryable operation kept failing until its retry budget ran out."""

    def __init__(self, message: str, attempts: int, last_error: BaseException):
        super().__init__(message)
        self.attempts = attempts
        self.last_error = last_error


class DispatchError(SessionUploadError):
    """Base class for errors raised by the chunk dispatcher."""

    pass


class SourceReadError(DispatchError):
    """Reading the source stream failed. Not retried."""

    def __init__(self, message: str, offset: int):
        super().__init__(message)
        self.offset = offset


class ChunkProcessingError(DispatchError):
    """Processing the chunk starting at ``chunk_offset`` failed."""

    def __init__(self, chunk_offset: int, error: BaseException):
        super().__init__(f"Chunk at offset {chunk_offset} failed: {error}")
        self.chunk_offset = chunk_offset
        self.error = error
