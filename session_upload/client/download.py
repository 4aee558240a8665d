"""Downloading files, with retries on errors."""

import io
import logging
from http.client import HTTPException
from typing import Optional

from session_upload.client.base import SessionClient
from session_upload.client.retry import RetryOpts, RetryState, call_with_retry
from session_upload.models import FileMetadata

logger = logging.getLogger(__name__)


class DownloadSession(io.RawIOBase):
    """A file download in progress, readable like a binary file.

    If reading the response body fails, the download is requested again starting at the
    first byte not yet read, so the caller sees one uninterrupted stream.
    """

    def __init__(
        self,
        client: SessionClient,
        path: str,
        retry: Optional[RetryOpts] = None,
        range_start: Optional[int] = None,
        range_end: Optional[int] = None,
    ):
        super().__init__()
        self._client = client
        self._path = path
        self._retry = retry or RetryOpts()
        self._range_start = range_start
        self._range_end = range_end
        self._body = None
        self.metadata: Optional[FileMetadata] = None
        self.content_length = 0
        self.bytes_read = 0

    def readable(self) -> bool:
        return True

    def readinto(self, buffer) -> int:
        retry_state = RetryState(self._retry)
        while True:
            try:
                data = self._body.read(len(buffer))
            except (OSError, HTTPException) as e:
                logger.error(f"Download error for {self._path}: {e}")
                if not retry_state.do_retry():
                    raise
                self.request()
                continue
            buffer[: len(data)] = data
            self.bytes_read += len(data)
            return len(data)

    def close(self) -> None:
        if self._body is not None:
            self._body.close()
            self._body = None
        super().close()

    def request(self) -> None:
        """(Re)issue the download request from the current position.

        ``content_length`` reflects the most recent response.
        """
        if self._range_start is None and not self.bytes_read:
            range_start = None
        else:
            range_start = (self._range_start or 0) + self.bytes_read
        response = call_with_retry(
            lambda: self._client.download(self._path, range_start, self._range_end),
            self._retry,
            description="download",
        )
        if self._body is not None:
            self._body.close()
        self._body = response.body
        self.metadata = response.metadata
        self.content_length = response.content_length


def download(
    client: SessionClient,
    path: str,
    retry: Optional[RetryOpts] = None,
    range_start: Optional[int] = None,
    range_end: Optional[int] = None,
) -> DownloadSession:
    """Start downloading ``path``, optionally only the inclusive range [range_start, range_end].

    Example:
        >>> with download(client, "/large_file.bin") as f:
        ...     content_hash = ContentHash()
        ...     content_hash.read_stream(f)
        >>> content_hash.finish_hex() == f.metadata.content_hash
        True
    """
    session = DownloadSession(client, path, retry, range_start, range_end)
    session.request()
    return session
