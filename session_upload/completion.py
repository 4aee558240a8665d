"""Tracking of the contiguous, acknowledged prefix of an upload."""


class CompletionTracker:
    """Keeps track of the offset up to which a stream is completely uploaded.

    Chunks are uploaded in parallel and can be acknowledged out of order, so the offset of
    a failed chunk is not necessarily a safe place to resume from: there may be gaps before
    it. Blocks that complete ahead of a gap are held back until the gap is filled.

    Not thread-safe; the owner serializes calls.
    """

    def __init__(self, complete_up_to: int = 0):
        self.complete_up_to = complete_up_to
        self._uploaded_blocks: dict[int, int] = {}

    @classmethod
    def resume_from(cls, complete_up_to: int) -> "CompletionTracker":
        """Create a tracker which assumes everything before ``complete_up_to`` is uploaded.

        The offset is trusted as-is; it is the caller's responsibility that the remote
        really holds that many contiguous bytes.
        """
        return cls(complete_up_to)

    @property
    def pending_blocks(self) -> int:
        """Number of completed blocks waiting behind a gap."""
        return len(self._uploaded_blocks)

    def complete_block(self, offset: int, length: int) -> None:
        """Mark the block ``[offset, offset + length)`` as uploaded."""
        if offset == self.complete_up_to:
            self.complete_up_to += length
            while self.complete_up_to in self._uploaded_blocks:
                self.complete_up_to += self._uploaded_blocks.pop(self.complete_up_to)
        else:
            # gap behind this block
            self._uploaded_blocks[offset] = length
