"""Resumable, parallel upload of a byte stream into a remote upload session."""

import logging
import random
import time
from dataclasses import dataclass
from enum import Enum
from threading import Event, Lock
from typing import IO, Callable, Optional

from session_upload.client.base import SessionClient
from session_upload.client.retry import (
    RetryOpts,
    RetryState,
    call_with_retry,
    wait_for_rate_limit,
)
from session_upload.client.stats import ProgressHandler, UploadStats
from session_upload.completion import CompletionTracker
from session_upload.content_hash import BLOCK_SIZE, ContentHash
from session_upload.dispatcher import ChunkDispatcher
from session_upload.exceptions import (
    DispatchError,
    PermanentApiError,
    RateLimitedError,
    SessionUploadError,
    TransientApiError,
)
from session_upload.models import CommitInfo, FileMetadata

logger = logging.getLogger(__name__)


@dataclass
class UploadOpts:
    """Options for how to perform uploads.

    Attributes:
        parallelism: How many chunks to upload in parallel
        blocks_per_request: How many 4 MiB blocks are sent in each append request. More
            blocks per request means fewer requests (and fewer rate limits), at the cost of
            more data to resend when a request has to be retried.
        retry_count: How many consecutive errors until a chunk is abandoned
        initial_backoff: First backoff in seconds after an error; each following backoff
            doubles, up to max_backoff
        max_backoff: Longest backoff in seconds
        progress_handler: Optional handler receiving progress updates
    """

    parallelism: int = 20
    blocks_per_request: int = 2
    retry_count: int = 3
    initial_backoff: float = 0.5  # 0.5 + 1 + 2 = 3.5s worst case per chunk, +/- jitter
    max_backoff: float = 2.0
    progress_handler: Optional[ProgressHandler] = None

    def __post_init__(self):
        if self.parallelism < 1:
            raise ValueError(f"parallelism must be at least 1, got {self.parallelism}")
        if self.blocks_per_request < 1:
            raise ValueError(
                f"blocks_per_request must be at least 1, got {self.blocks_per_request}"
            )
        if self.retry_count < 1:
            raise ValueError(f"retry_count must be at least 1, got {self.retry_count}")

    @property
    def chunk_size(self) -> int:
        """Bytes sent per append request."""
        return BLOCK_SIZE * self.blocks_per_request

    @property
    def retry_opts(self) -> RetryOpts:
        return RetryOpts(
            max=self.retry_count,
            initial_backoff=self.initial_backoff,
            max_backoff=self.max_backoff,
        )


@dataclass(frozen=True)
class UploadResume:
    """Parameters to resume an incomplete upload.

    The textual form is ``"<session_id>,<start_offset>"``. Since session ids are opaque,
    the rightmost comma separates the offset.

    Attributes:
        session_id: The upload session ID
        start_offset: Number of bytes the remote is known to hold contiguously
    """

    session_id: str
    start_offset: int

    def __post_init__(self):
        if self.start_offset < 0:
            raise ValueError(f"start_offset must not be negative, got {self.start_offset}")

    def __str__(self) -> str:
        return f"{self.session_id},{self.start_offset}"

    @classmethod
    def from_string(cls, text: str) -> "UploadResume":
        """Parse ``"<session_id>,<start_offset>"``.

        Raises:
            ValueError: If either part is missing or the offset is not a decimal integer
        """
        session_id, sep, offset_str = text.rpartition(",")
        if not sep:
            raise ValueError(f"missing file offset in resume token {text!r}")
        if not session_id:
            raise ValueError(f"missing session ID in resume token {text!r}")
        if not (offset_str.isascii() and offset_str.isdigit()):
            raise ValueError(f"invalid file offset {offset_str!r}")
        return cls(session_id=session_id, start_offset=int(offset_str))


class SessionState(Enum):
    """Lifecycle of an upload session."""

    STARTED = "started"
    RESUMED = "resumed"
    TRANSFERRING = "transferring"
    CLOSED = "closed"
    COMMITTED = "committed"
    FAILED = "failed"


class UploadSession:
    """An upload session for one file.

    Data is read sequentially from the source and appended to the remote session in
    chunks, several at a time. Chunks can be acknowledged out of order; the session keeps
    track of the contiguous prefix that is safe to resume from.

    Example:
        >>> client = HTTPSessionClient("http://localhost:8080/2")
        >>> session = UploadSession.new(client)
        >>> with open("large_file.bin", "rb") as f:
        ...     try:
        ...         session.upload(f, UploadOpts(parallelism=4))
        ...     except SessionUploadError:
        ...         print(f"retry with --resume {session.get_resume()}")
        ...         raise
        >>> session.commit(CommitInfo(path="/large_file.bin"))

        >>> # Later, after a failure
        >>> session = UploadSession.resume(client, UploadResume.from_string(token))
        >>> with open("large_file.bin", "rb") as f:
        ...     f.seek(session.start_offset)
        ...     session.upload(f)
    """

    COMMIT_ATTEMPTS = 3
    COMMIT_RETRY_DELAY = 1.0

    def __init__(
        self,
        client: SessionClient,
        session_id: str,
        start_offset: int = 0,
        state: SessionState = SessionState.STARTED,
        sleep: Optional[Callable[[float], None]] = None,
        rng: Optional[random.Random] = None,
    ):
        """Initialize an upload session. Use ``new`` or ``resume`` instead.

        Args:
            client: Remote session store client
            session_id: Identifier of the remote session
            start_offset: Bytes the remote already holds for this session
            state: Initial lifecycle state
            sleep: Sleep function used between retries (default: time.sleep)
            rng: Random source for backoff jitter (default: random.SystemRandom)
        """
        self._client = client
        self.session_id = session_id
        self.start_offset = start_offset
        self._sleep = sleep or time.sleep
        self._rng = rng
        self._state = state
        self._upload_started = False
        self._completion = CompletionTracker.resume_from(start_offset)
        self._completion_lock = Lock()
        self._stats = UploadStats(start_offset=start_offset)
        self.stats_lock = Lock()

    @classmethod
    def new(cls, client: SessionClient, **kwargs) -> "UploadSession":
        """Start a new remote upload session.

        Not retried: a failure here leaves nothing behind to resume.
        """
        session_id = client.upload_session_start(session_type="concurrent")
        logger.info(f"Upload session started: {session_id}")
        return cls(client, session_id, 0, SessionState.STARTED, **kwargs)

    @classmethod
    def resume(
        cls,
        client: SessionClient,
        resume: UploadResume,
        verify: bool = False,
        **kwargs,
    ) -> "UploadSession":
        """Resume a previously interrupted upload session.

        The offset in ``resume`` is trusted: the caller guarantees that the remote holds
        exactly that many contiguous bytes for the session. A wrong offset skips or
        duplicates data. With ``verify=True`` a zero-length append is sent at the offset
        first, so the remote can reject it.

        Raises:
            IncorrectOffsetError: If verify is set and the remote disagrees with the offset
        """
        if verify:
            client.upload_session_append(resume.session_id, resume.start_offset, b"")
            logger.debug(f"Remote confirmed offset {resume.start_offset} for {resume.session_id}")
        logger.info(f"Resuming upload session {resume.session_id} at offset {resume.start_offset}")
        return cls(client, resume.session_id, resume.start_offset, SessionState.RESUMED, **kwargs)

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def complete_up_to(self) -> int:
        """Offset up to which the remote holds every byte."""
        with self._completion_lock:
            return self._completion.complete_up_to

    @property
    def stats(self) -> UploadStats:
        """Get upload statistics (read-only copy)."""
        with self.stats_lock:
            return UploadStats(
                start_offset=self._stats.start_offset,
                bytes_transferred=self._stats.bytes_transferred,
                chunks_completed=self._stats.chunks_completed,
                chunks_failed=self._stats.chunks_failed,
                chunks_retried=self._stats.chunks_retried,
                start_time=self._stats.start_time,
            )

    def get_resume(self) -> UploadResume:
        """Get the parameters to resume this upload later with ``UploadSession.resume``.

        Valid at any time, including after a failed upload.
        """
        return UploadResume(session_id=self.session_id, start_offset=self.complete_up_to)

    def upload(self, source: IO[bytes], opts: Optional[UploadOpts] = None) -> int:
        """Upload ``source`` into the session. May only be called once per session.

        Blocks until the whole source is transferred or an error occurs. If the upload
        fails, ``get_resume`` gives the parameters to continue it without resending data
        the remote already acknowledged.

        Args:
            source: Binary stream positioned at ``start_offset`` of the file
            opts: Upload options (default: ``UploadOpts()``)

        Returns:
            Number of bytes the remote holds for the session

        Raises:
            RuntimeError: If called twice
            SourceReadError: If reading the source fails
            ChunkProcessingError: If a chunk could not be uploaded
        """
        opts = opts or UploadOpts()
        with self._completion_lock:
            if self._upload_started:
                raise RuntimeError("upload() may only be called once per session")
            self._upload_started = True

        self._state = SessionState.TRANSFERRING
        chunk_size = opts.chunk_size
        closed = Event()
        start_time = time.monotonic()
        with self.stats_lock:
            self._stats.start_time = time.time()

        logger.info(
            f"Uploading to session {self.session_id} from offset {self.start_offset} "
            f"(chunk size {chunk_size}, parallelism {opts.parallelism})"
        )

        def upload_chunk(chunk_offset: int, data: bytes) -> None:
            close = len(data) != chunk_size
            if close:
                # only the last chunk may be short
                closed.set()
            self._upload_block(self.start_offset + chunk_offset, data, close, start_time, opts)

        try:
            ChunkDispatcher(chunk_size, opts.parallelism).run(source, upload_chunk)
        except DispatchError as e:
            self._state = SessionState.FAILED
            logger.error(f"Upload failed: {e}. Resume with {self.get_resume()}")
            raise
        except BaseException:
            self._state = SessionState.FAILED
            raise

        final_len = self.complete_up_to
        if not closed.is_set():
            # the source length was a multiple of the chunk size
            try:
                self._upload_block(final_len, b"", True, start_time, opts)
            except SessionUploadError as e:
                # a resumed session may already be closed; committing can still work
                logger.warning(f"Failed to close session {self.session_id}: {e}")

        self._state = SessionState.CLOSED
        logger.info(
            f"Uploaded {self.stats.bytes_transferred} bytes to session {self.session_id}, "
            f"{final_len} bytes complete"
        )
        return final_len

    def commit(self, commit_info: CommitInfo) -> FileMetadata:
        """Commit the uploaded data to a file.

        Retried a few times with a fixed delay. A failed commit can be retried later on
        the same session, since nothing more needs to be appended.

        Returns:
            Metadata of the new file
        """
        total_length = self.complete_up_to
        errors = 0
        while True:
            try:
                metadata = self._client.upload_session_finish(
                    self.session_id, total_length, commit_info
                )
            except RateLimitedError as e:
                wait_for_rate_limit(e, self._sleep)
            except PermanentApiError as e:
                logger.error(f"Error committing upload: {e}, not retrying.")
                raise
            except (TransientApiError, OSError) as e:
                errors += 1
                if errors >= self.COMMIT_ATTEMPTS:
                    logger.error(f"Error committing upload: {e}, failing.")
                    raise
                logger.warning(f"Error committing upload: {e}, retrying.")
                self._sleep(self.COMMIT_RETRY_DELAY)
            else:
                self._state = SessionState.COMMITTED
                logger.info(f"Upload succeeded: {metadata.path_display}")
                return metadata

    def _upload_block(
        self,
        offset: int,
        data: bytes,
        close: bool,
        start_time: float,
        opts: UploadOpts,
    ) -> None:
        """Append one chunk with retries, then account for it and report progress."""
        block_start_time = time.monotonic()
        content_hash = ContentHash.from_bytes(data).finish_hex()
        retry_state = RetryState(opts.retry_opts)

        try:
            call_with_retry(
                lambda: self._client.upload_session_append(
                    self.session_id, offset, data, content_hash=content_hash, close=close
                ),
                opts.retry_opts,
                description=f"upload_session_append at offset {offset}",
                sleep=self._sleep,
                rng=self._rng,
                state=retry_state,
            )
        except SessionUploadError:
            with self.stats_lock:
                self._stats.chunks_failed += 1
            raise

        with self._completion_lock:
            self._completion.complete_block(offset, len(data))

        now = time.monotonic()
        with self.stats_lock:
            self._stats.bytes_transferred += len(data)
            bytes_so_far = self._stats.bytes_transferred
            if data:
                self._stats.chunks_completed += 1
            if retry_state.retry_count:
                self._stats.chunks_retried += 1

        logger.debug(
            f"Chunk at offset {offset} ({len(data)} bytes) uploaded"
            + (", session closed" if close else "")
        )

        if opts.progress_handler and data:
            block_duration = now - block_start_time
            overall_duration = now - start_time
            # assumes all workers upload at roughly the same speed
            block_rate = (
                len(data) / block_duration * opts.parallelism if block_duration > 0 else 0.0
            )
            overall_rate = bytes_so_far / overall_duration if overall_duration > 0 else 0.0
            try:
                opts.progress_handler.update(bytes_so_far, block_rate, overall_rate)
            except Exception as e:
                # the chunk is already stored remotely
                logger.warning(f"Progress handler failed at offset {offset}: {e}")
