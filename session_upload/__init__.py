"""Session Upload Library

Parallel, resumable, integrity-checked uploads of large files to a remote store with
session-oriented uploads. Provides the client side upload engine and a reference
session store server, with minimal dependencies.
"""

__version__ = "0.0.1"

from session_upload.client import (
    HTTPSessionClient,
    SessionClient,
    UploadOpts,
    UploadResume,
    UploadSession,
    UploadStats,
)
from session_upload.completion import CompletionTracker
from session_upload.content_hash import BLOCK_SIZE, ContentHash, hash_file
from session_upload.dispatcher import ChunkDispatcher
from session_upload.exceptions import (
    ApiError,
    PermanentApiError,
    RateLimitedError,
    SessionUploadError,
    TransientApiError,
)
from session_upload.models import CommitInfo, FileMetadata, FolderMetadata
from session_upload.server import SessionHTTPRequestHandler, SessionServer
from session_upload.storage import SessionStorage, SQLiteSessionStorage

__all__ = [
    "BLOCK_SIZE",
    "ContentHash",
    "hash_file",
    "CompletionTracker",
    "ChunkDispatcher",
    "SessionClient",
    "HTTPSessionClient",
    "UploadSession",
    "UploadOpts",
    "UploadResume",
    "UploadStats",
    "CommitInfo",
    "FileMetadata",
    "FolderMetadata",
    "SessionServer",
    "SessionHTTPRequestHandler",
    "SessionStorage",
    "SQLiteSessionStorage",
    "SessionUploadError",
    "ApiError",
    "TransientApiError",
    "RateLimitedError",
    "PermanentApiError",
]
