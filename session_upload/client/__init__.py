"""Upload engine and remote store client implementations."""

from session_upload.client.base import HTTPSessionClient, SessionClient
from session_upload.client.download import DownloadSession, download
from session_upload.client.listing import DirectoryIterator, list_directory, resolve_destination
from session_upload.client.retry import RetryOpts, RetryState, call_with_retry
from session_upload.client.stats import ProgressHandler, UploadStats
from session_upload.client.uploader import SessionState, UploadOpts, UploadResume, UploadSession

__all__ = [
    "SessionClient",
    "HTTPSessionClient",
    "UploadSession",
    "UploadOpts",
    "UploadResume",
    "SessionState",
    "RetryOpts",
    "RetryState",
    "call_with_retry",
    "ProgressHandler",
    "UploadStats",
    "DirectoryIterator",
    "list_directory",
    "resolve_destination",
    "DownloadSession",
    "download",
]
