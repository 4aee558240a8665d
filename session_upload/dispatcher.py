"""Sequential reading of a stream with parallel processing of its chunks."""

import logging
from concurrent.futures import ThreadPoolExecutor
from threading import BoundedSemaphore, Lock
from typing import IO, Callable

from session_upload.exceptions import ChunkProcessingError, SourceReadError

logger = logging.getLogger(__name__)


class ChunkDispatcher:
    """Read a stream in fixed-size chunks and process them on a bounded worker pool.

    The source is read by a single reader, strictly in order: chunk ``k`` always covers
    ``[k * chunk_size, (k + 1) * chunk_size)``. Only the last chunk may be shorter. Up to
    ``parallelism`` chunks are processed at the same time and may finish in any order; the
    reader blocks while all workers are busy.

    Example:
        >>> dispatcher = ChunkDispatcher(chunk_size=4 * 1024 * 1024, parallelism=4)
        >>> with open("file.bin", "rb") as f:
        ...     dispatcher.run(f, lambda offset, data: print(offset, len(data)))
    """

    def __init__(self, chunk_size: int, parallelism: int):
        """Initialize the dispatcher.

        Args:
            chunk_size: Size of each chunk in bytes
            parallelism: Maximum number of chunks processed concurrently

        Raises:
            ValueError: If chunk_size or parallelism is less than 1
        """
        if chunk_size < 1:
            raise ValueError(f"chunk_size must be at least 1 byte, got {chunk_size}")
        if parallelism < 1:
            raise ValueError(f"parallelism must be at least 1, got {parallelism}")
        self.chunk_size = chunk_size
        self.parallelism = parallelism

    def run(self, source: IO[bytes], process: Callable[[int, bytes], None]) -> int:
        """Dispatch every chunk of ``source`` to ``process(offset, data)``.

        Offsets are relative to the position of ``source`` when the call starts.

        Returns:
            Total number of bytes read and dispatched

        Raises:
            SourceReadError: If reading the source fails. Raised immediately, without
                waiting for chunks still being processed.
            ChunkProcessingError: If ``process`` raised for some chunk. No further chunks
                are dispatched once this happens.
        """
        slots = BoundedSemaphore(self.parallelism)
        failures: list[tuple[int, BaseException]] = []
        failures_lock = Lock()

        def work(offset: int, data: bytes) -> None:
            try:
                process(offset, data)
            except Exception as e:
                logger.error(f"Chunk at offset {offset} ({len(data)} bytes) failed: {e}")
                with failures_lock:
                    failures.append((offset, e))
            finally:
                slots.release()

        executor = ThreadPoolExecutor(
            max_workers=self.parallelism, thread_name_prefix="chunk-worker"
        )
        offset = 0
        try:
            while True:
                slots.acquire()
                with failures_lock:
                    failed = bool(failures)
                if failed:
                    slots.release()
                    logger.debug(f"Not dispatching past offset {offset}: a chunk failed")
                    break

                try:
                    data = self._read_chunk(source)
                except (OSError, ValueError) as e:
                    # ValueError: reading a closed stream
                    slots.release()
                    raise SourceReadError(
                        f"Failed to read source at offset {offset}: {e}", offset
                    ) from e

                if not data:
                    slots.release()
                    break

                executor.submit(work, offset, data)
                logger.debug(f"Dispatched chunk at offset {offset} ({len(data)} bytes)")
                offset += len(data)

                if len(data) < self.chunk_size:
                    break
        except BaseException:
            executor.shutdown(wait=False, cancel_futures=True)
            raise

        executor.shutdown(wait=True)

        if failures:
            chunk_offset, error = failures[0]
            raise ChunkProcessingError(chunk_offset, error) from error

        return offset

    def _read_chunk(self, source: IO[bytes]) -> bytes:
        """Read a full chunk, stitching short reads together. Shorter only at EOF."""
        buf = bytearray()
        while len(buf) < self.chunk_size:
            try:
                data = source.read(self.chunk_size - len(buf))
            except InterruptedError:
                continue
            if not data:
                break
            buf += data
        return bytes(buf)
