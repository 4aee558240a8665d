"""Upload statistics and progress reporting."""

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass


class ProgressHandler(ABC):
    """Receives progress updates while a stream uploads.

    ``update`` is called inline on whichever worker thread just finished a chunk, possibly
    from several threads at once. Implementations must be thread-safe and return quickly;
    anything that needs ordering or buffering has to do it internally.
    """

    @abstractmethod
    def update(self, bytes_uploaded: int, instant_rate: float, overall_rate: float) -> None:
        """Report progress.

        Args:
            bytes_uploaded: Total bytes uploaded so far by this session
            instant_rate: Estimated rate (bytes/second) from the most recent chunk, assuming
                all workers upload at a similar speed
            overall_rate: Average rate (bytes/second) since the upload started
        """
        pass


@dataclass
class UploadStats:
    """Statistics for upload progress.

    Attributes:
        start_offset: Offset the session was resumed from (0 for a new session)
        bytes_transferred: Number of bytes acknowledged by the remote in this session
        chunks_completed: Number of chunks successfully uploaded
        chunks_failed: Number of chunks that failed for good
        chunks_retried: Number of chunks that required retries
        start_time: Timestamp when upload started
    """

    start_offset: int = 0
    bytes_transferred: int = 0
    chunks_completed: int = 0
    chunks_failed: int = 0
    chunks_retried: int = 0
    start_time: float = 0.0

    def __post_init__(self):
        if self.start_time == 0.0:
            self.start_time = time.time()

    @property
    def elapsed_time(self) -> float:
        """Get elapsed time in seconds."""
        return time.time() - self.start_time

    @property
    def upload_speed(self) -> float:
        """Get upload speed in bytes/second."""
        if self.elapsed_time > 0:
            return self.bytes_transferred / self.elapsed_time
        return 0.0

    @property
    def upload_speed_mbps(self) -> float:
        """Get upload speed in MB/second."""
        return self.upload_speed / (1024 * 1024)

    @property
    def total_uploaded(self) -> int:
        """Bytes the remote holds for this session, counting what was there before resuming."""
        return self.start_offset + self.bytes_transferred
