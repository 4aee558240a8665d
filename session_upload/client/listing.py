"""Directory listing and destination lookup."""

import logging
from collections import deque
from typing import Iterator, Optional

from session_upload.client.base import SessionClient
from session_upload.client.retry import RetryOpts, call_with_retry
from session_upload.exceptions import LookupNotFoundError
from session_upload.models import FileMetadata, ListFolderResult, Metadata

logger = logging.getLogger(__name__)

# metadata and listing requests: 3 attempts, rate limits honoured
COLLABORATOR_RETRY = RetryOpts(max=3, initial_backoff=0.5, max_backoff=2.0)


class DirectoryIterator:
    """Iterator over directory entries which pages through the listing as needed."""

    def __init__(
        self,
        client: SessionClient,
        first_page: ListFolderResult,
        retry: RetryOpts = COLLABORATOR_RETRY,
    ):
        self._client = client
        self._retry = retry
        self._buffer: deque = deque(first_page.entries)
        self._cursor: Optional[str] = first_page.cursor if first_page.has_more else None

    def __iter__(self) -> Iterator[Metadata]:
        return self

    def __next__(self) -> Metadata:
        while not self._buffer:
            if self._cursor is None:
                raise StopIteration
            cursor, self._cursor = self._cursor, None
            page = call_with_retry(
                lambda: self._client.list_folder_continue(cursor),
                self._retry,
                description="list_folder_continue",
            )
            self._buffer.extend(page.entries)
            if page.has_more:
                self._cursor = page.cursor
        return self._buffer.popleft()

    @property
    def buffered(self) -> int:
        """Number of entries fetched but not yet returned."""
        return len(self._buffer)


def list_directory(
    client: SessionClient,
    path: str,
    recursive: bool = False,
    retry: RetryOpts = COLLABORATOR_RETRY,
) -> DirectoryIterator:
    """List the entries under ``path``, optionally recursively.

    Args:
        client: Remote session store client
        path: Absolute folder path; "/" is the root
        recursive: Include the contents of sub-folders
        retry: Retry configuration for each page request

    Raises:
        ValueError: If path is not absolute
    """
    if not path.startswith("/"):
        raise ValueError(f"path needs to be absolute (start with a '/'), got {path!r}")
    # the root folder is requested as an empty string
    requested_path = "" if path == "/" else path
    first_page = call_with_retry(
        lambda: client.list_folder(requested_path, recursive=recursive),
        retry,
        description="list_folder",
    )
    return DirectoryIterator(client, first_page, retry)


def resolve_destination(
    client: SessionClient,
    given_path: str,
    source_name: str,
    retry: RetryOpts = COLLABORATOR_RETRY,
) -> str:
    """Work out the remote path a local file should be uploaded to.

    - "/" or an existing folder: the file goes inside it, under ``source_name``
    - a path that doesn't exist yet: used as-is (missing parents are created on commit)
    - an existing file: refused, existing files are never overwritten

    Raises:
        FileExistsError: If ``given_path`` is an existing file
    """
    if given_path == "/":
        return f"/{source_name}"

    try:
        metadata = call_with_retry(
            lambda: client.get_metadata(given_path), retry, description="get_metadata"
        )
    except LookupNotFoundError:
        return given_path

    if isinstance(metadata, FileMetadata):
        raise FileExistsError(f"Path {given_path} already exists")
    return f"{given_path.rstrip('/')}/{source_name}"
