"""
Content hashing compatible with the remote store's per-file integrity hash.

The content hash of a file is computed by splitting it into 4 MiB blocks, taking the SHA-256
of each block, concatenating those digests and taking the SHA-256 of the result. Because the
block boundary is part of the hash, it is also the granularity of chunked uploads.
"""

import hashlib
import os
from typing import IO, Union

BLOCK_SIZE = 4 * 1024 * 1024  # fixed by the remote protocol

OUTPUT_SIZE = 256 // 8


class ContentHash:
    """
    Streaming content hasher.

    Data can be fed in pieces of any size; the result only depends on the concatenation
    of all pieces.

    Example:
        >>> h = ContentHash()
        >>> h.update(b"hel")
        >>> h.update(b"lo")
        >>> h.finish_hex()
        '9595c9df90075148eb06860365df33584b75bff782a510c6cd4883a419833d50'
    """

    def __init__(self):
        self._ctx = hashlib.sha256()
        self._block_ctx = hashlib.sha256()
        self._partial = 0
        self._finished = False

    @classmethod
    def from_bytes(cls, data: bytes) -> "ContentHash":
        """Create a hasher already fed with ``data``."""
        content_hash = cls()
        content_hash.update(data)
        return content_hash

    @property
    def partial(self) -> int:
        """Number of bytes accumulated in the current, incomplete block."""
        return self._partial

    def update(self, data: bytes) -> None:
        """Feed more data into the hash."""
        self._check_not_finished()
        view = memoryview(data).cast("B")
        pos = 0
        while pos < len(view):
            take = min(BLOCK_SIZE - self._partial, len(view) - pos)
            self._block_ctx.update(view[pos : pos + take])
            self._partial += take
            pos += take
            if self._partial == BLOCK_SIZE:
                self._finish_block()

    def read_stream(self, stream: IO[bytes]) -> int:
        """Read ``stream`` until EOF and hash everything read.

        Interrupted reads are retried. Any other I/O error is raised before the failed read
        touches the hash state.

        Returns:
            Number of bytes hashed
        """
        total = 0
        while True:
            try:
                data = stream.read(BLOCK_SIZE)
            except InterruptedError:
                continue
            if not data:
                return total
            self.update(data)
            total += len(data)

    def copy(self) -> "ContentHash":
        """Return an independent copy of the current hash state."""
        self._check_not_finished()
        clone = ContentHash()
        clone._ctx = self._ctx.copy()
        clone._block_ctx = self._block_ctx.copy()
        clone._partial = self._partial
        return clone

    def finish(self) -> bytes:
        """Finish the hash and return the raw digest. The hasher can't be used afterwards."""
        self._check_not_finished()
        if self._partial != 0:
            self._finish_block()
        self._finished = True
        return self._ctx.digest()

    def finish_hex(self) -> str:
        """Finish the hash and return it as a lowercase hex string."""
        return self.finish().hex()

    def _finish_block(self) -> None:
        self._ctx.update(self._block_ctx.digest())
        self._block_ctx = hashlib.sha256()
        self._partial = 0

    def _check_not_finished(self) -> None:
        if self._finished:
            raise ValueError("ContentHash has already been finished")


def hash_file(file_source: Union[str, IO[bytes]]) -> str:
    """
    Compute the hex content hash of a file.

    Args:
        file_source: Either a file path (str) or a binary file stream (IO). A stream is
            hashed from its beginning and its position is restored afterwards.

    Returns:
        Hex encoded content hash
    """
    content_hash = ContentHash()
    if isinstance(file_source, str):
        with open(file_source, "rb") as fs:
            content_hash.read_stream(fs)
    else:
        original_pos = file_source.tell()
        try:
            file_source.seek(0, os.SEEK_SET)
            content_hash.read_stream(file_source)
        finally:
            file_source.seek(original_pos)
    return content_hash.finish_hex()
