"""Shared fixtures: an in-memory remote session store."""

import io
import threading
from typing import Callable, Optional

import pytest

from session_upload.client.base import SessionClient
from session_upload.completion import CompletionTracker
from session_upload.content_hash import ContentHash
from session_upload.exceptions import (
    ContentHashMismatchError,
    IncorrectOffsetError,
    LookupNotFoundError,
    PermanentApiError,
)
from session_upload.models import (
    CommitInfo,
    DownloadResponse,
    FileMetadata,
    FolderMetadata,
    ListFolderResult,
)


class FakeSessionClient(SessionClient):
    """Thread-safe in-memory session store.

    ``append_hook(offset, data, close)`` runs before every append is stored and may raise
    to inject failures or block to control ordering.
    """

    def __init__(self, page_size: int = 2):
        self.lock = threading.Lock()
        self.sessions: dict[str, dict] = {}
        self.files: dict[str, tuple[FileMetadata, bytes]] = {}
        self.appends: list[tuple[int, int, bool]] = []
        self.finish_calls: list[int] = []
        self.append_hook: Optional[Callable[[int, bytes, bool], None]] = None
        self.finish_hook: Optional[Callable[[], None]] = None
        self.page_size = page_size
        self._listings: dict[str, list] = {}
        self._counter = 0

    def upload_session_start(self, session_type: str = "concurrent") -> str:
        with self.lock:
            self._counter += 1
            session_id = f"session-{self._counter}"
            self.sessions[session_id] = {"chunks": {}, "closed": False}
        return session_id

    def upload_session_append(self, session_id, offset, data, content_hash=None, close=False):
        if self.append_hook:
            self.append_hook(offset, data, close)
        with self.lock:
            self.appends.append((offset, len(data), close))
            session = self.sessions.get(session_id)
            if session is None:
                raise LookupNotFoundError("session not found")
            if content_hash is not None:
                if ContentHash.from_bytes(data).finish_hex() != content_hash:
                    raise ContentHashMismatchError("content hash mismatch")
            if not data and not close:
                length = self._contiguous(session)
                if offset != length:
                    raise IncorrectOffsetError(correct_offset=length)
            if data:
                session["chunks"][offset] = bytes(data)
            if close:
                session["closed"] = True

    def upload_session_finish(self, session_id, offset, commit_info: CommitInfo):
        if self.finish_hook:
            self.finish_hook()
        with self.lock:
            self.finish_calls.append(offset)
            session = self.sessions.get(session_id)
            if session is None:
                raise LookupNotFoundError("session not found")
            length = self._contiguous(session)
            if length != offset:
                raise IncorrectOffsetError(correct_offset=length)
            content = b"".join(session["chunks"][k] for k in sorted(session["chunks"]))
            content = content[:offset]
            metadata = FileMetadata(
                name=commit_info.path.rsplit("/", 1)[-1],
                path_display=commit_info.path,
                id=f"id:{len(self.files)}",
                size=len(content),
                content_hash=ContentHash.from_bytes(content).finish_hex(),
                client_modified=commit_info.client_modified,
            )
            self.files[commit_info.path.lower()] = (metadata, content)
            del self.sessions[session_id]
            return metadata

    def add_file(self, path: str, content: bytes) -> FileMetadata:
        metadata = FileMetadata(
            name=path.rsplit("/", 1)[-1],
            path_display=path,
            id=f"id:{len(self.files)}",
            size=len(content),
            content_hash=ContentHash.from_bytes(content).finish_hex(),
        )
        self.files[path.lower()] = (metadata, content)
        return metadata

    def get_metadata(self, path):
        if path.lower() in self.files:
            return self.files[path.lower()][0]
        prefix = path.lower().rstrip("/") + "/"
        if any(key.startswith(prefix) for key in self.files):
            return FolderMetadata(name=path.rstrip("/").rsplit("/", 1)[-1], path_display=path)
        raise LookupNotFoundError("path/not_found/")

    def list_folder(self, path, recursive=False, limit=None):
        if path == "/":
            raise PermanentApiError("path/malformed_path/")
        prefix = path.lower() + "/"
        entries = [
            metadata
            for key, (metadata, _) in sorted(self.files.items())
            if key.startswith(prefix) and (recursive or "/" not in key[len(prefix) :])
        ]
        return self._page(entries, 0)

    def list_folder_continue(self, cursor):
        entries_key, position = cursor.rsplit(":", 1)
        return self._page(self._listings[entries_key], int(position))

    def download(self, path, range_start=None, range_end=None):
        if path.lower() not in self.files:
            raise LookupNotFoundError("path/not_found/")
        metadata, content = self.files[path.lower()]
        start = range_start or 0
        end = len(content) if range_end is None else range_end + 1
        data = content[start:end]
        return DownloadResponse(metadata=metadata, body=io.BytesIO(data), content_length=len(data))

    def committed_content(self, path: str) -> bytes:
        return self.files[path.lower()][1]

    def _page(self, entries, position):
        key = str(len(self._listings))
        self._listings[key] = entries
        end = position + self.page_size
        return ListFolderResult(
            entries=entries[position:end], cursor=f"{key}:{end}", has_more=end < len(entries)
        )

    @staticmethod
    def _contiguous(session) -> int:
        tracker = CompletionTracker()
        for offset in sorted(session["chunks"]):
            tracker.complete_block(offset, len(session["chunks"][offset]))
        return tracker.complete_up_to


@pytest.fixture
def fake_client():
    """Create an in-memory session store client."""
    return FakeSessionClient()


@pytest.fixture
def no_sleep():
    """Sleep function that records requested delays instead of sleeping."""
    delays = []

    def sleep(seconds):
        delays.append(seconds)

    sleep.delays = delays
    return sleep
