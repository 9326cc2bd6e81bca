"""Gap-aware bookkeeping of out-of-order chunk completions."""

from __future__ import annotations

from typing import Dict, List, Tuple

__all__ = ["CommitWindow"]


class CommitWindow:
    """
    Collects successful chunks in any order and releases them in offset order.

    The committed offset only moves across a contiguous run of successes
    starting at the current committed offset; a missing chunk holds back
    every chunk above it.
    """

    def __init__(self, committed_offset: int = 0):
        self.committed_offset = committed_offset
        self._pending: Dict[int, int] = {}  # offset -> end offset

    def record(self, offset: int, end: int) -> bool:
        """
        Record a successful chunk ``[offset, end)``.

        Returns:
            False if the chunk was already committed or recorded
        """
        if end <= offset:
            raise ValueError(f"Empty chunk range [{offset}, {end})")
        if offset < self.committed_offset or offset in self._pending:
            return False
        self._pending[offset] = end
        return True

    def advance(self) -> List[Tuple[int, int]]:
        """
        Move the committed offset across every contiguous success.

        Returns:
            The ranges released, in offset order
        """
        released = []
        while self.committed_offset in self._pending:
            start = self.committed_offset
            end = self._pending.pop(start)
            released.append((start, end))
            self.committed_offset = end
        return released

    @property
    def pending(self) -> int:
        """Successful chunks waiting behind a gap."""
        return len(self._pending)

    def __contains__(self, offset: int) -> bool:
        return offset in self._pending
