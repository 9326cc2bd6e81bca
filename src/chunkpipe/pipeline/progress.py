"""Progress tracking: the single writer of the committed offset."""

from __future__ import annotations

import logging

from ..adapters.base import ProgressStore
from ..config import RunConfig
from ..errors import ProgressError
from ..types import ProgressRecord
from .retry import call_with_retries

logger = logging.getLogger(__name__)

__all__ = ["ProgressTracker"]


class ProgressTracker:
    """Tracks the committed offset and persists it through a ProgressStore."""

    def __init__(self, store: ProgressStore, config: RunConfig):
        """
        Initialize the progress tracker.

        Args:
            store: Durable store for the committed offset
            config: Run configuration (retry and backoff policy)

        Saves are retried in full even while the run is draining, so that
        chunks finished before an abort still reach the store.
        """
        self.store = store
        self.config = config
        self.committed_offset = 0
        self.commits = 0

    def load(self) -> int:
        """Return the last durably committed offset (0 if none)."""
        offset = call_with_retries(self.store.load, self.config, what="Progress load")
        offset = int(offset or 0)
        if offset < 0:
            raise ProgressError(f"Progress store returned a negative offset: {offset}")
        self.committed_offset = offset
        logger.info("Loaded committed offset %d", offset)
        return offset

    def reset(self) -> None:
        """Persist offset 0, discarding any previous progress."""
        call_with_retries(lambda: self.store.save(0), self.config, what="Progress reset")
        self.committed_offset = 0
        logger.info("Progress reset to offset 0")

    def commit(self, offset: int) -> None:
        """
        Durably record that every row below ``offset`` is processed.

        Returns only after the store has saved the offset.

        Raises:
            ProgressError: If offset is lower than the committed offset
        """
        if offset < self.committed_offset:
            raise ProgressError(
                f"Cannot commit offset {offset}: already committed "
                f"{self.committed_offset}"
            )
        if offset == self.committed_offset:
            return
        call_with_retries(
            lambda: self.store.save(offset),
            self.config,
            what=f"Progress save of offset {offset}",
        )
        self.committed_offset = offset
        self.commits += 1
        logger.debug("Committed offset %d", offset)

    @property
    def record(self) -> ProgressRecord:
        return ProgressRecord(committed_offset=self.committed_offset)
