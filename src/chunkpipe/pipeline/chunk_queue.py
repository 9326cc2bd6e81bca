"""Bounded chunk buffer and in-flight gate between reader and workers."""

from __future__ import annotations

import threading
from collections import deque
from typing import Deque, Optional, Union

from ..types import Chunk

__all__ = ["ChunkQueue", "InFlightGate", "CLOSED"]


class _Closed:
    """Sentinel returned by ChunkQueue.pop() once the queue is closed."""

    _instance: Optional["_Closed"] = None

    def __new__(cls) -> "_Closed":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "CLOSED"

    def __bool__(self) -> bool:
        return False


CLOSED = _Closed()


class ChunkQueue:
    """
    Bounded FIFO of fetched chunks.

    push() blocks while the queue is full, which is what throttles the
    reader when workers fall behind. pop() blocks while it is empty.
    close() wakes every blocked caller: pop() then returns CLOSED once the
    buffer is drained, push() returns False.
    """

    def __init__(self, capacity: int):
        if capacity < 1:
            raise ValueError(f"capacity must be >= 1, got {capacity}")
        self.capacity = capacity
        self._items: Deque[Chunk] = deque()
        self._lock = threading.Lock()
        self._not_empty = threading.Condition(self._lock)
        self._not_full = threading.Condition(self._lock)
        self._closed = False
        self.high_water = 0

    def push(self, chunk: Chunk, timeout: Optional[float] = None) -> bool:
        """
        Append a chunk, blocking while the queue is full.

        Returns:
            True if the chunk was queued, False if the queue was closed
            (or the timeout expired) before space became available
        """
        with self._not_full:
            if not self._not_full.wait_for(
                lambda: self._closed or len(self._items) < self.capacity,
                timeout=timeout,
            ):
                return False
            if self._closed:
                return False
            self._items.append(chunk)
            self.high_water = max(self.high_water, len(self._items))
            self._not_empty.notify()
            return True

    def pop(self, timeout: Optional[float] = None) -> Union[Chunk, _Closed, None]:
        """
        Remove the oldest chunk, blocking while the queue is empty.

        Returns:
            The chunk, CLOSED once the queue is closed and empty, or None if
            the timeout expired
        """
        with self._not_empty:
            if not self._not_empty.wait_for(
                lambda: self._closed or self._items, timeout=timeout
            ):
                return None
            if self._items:
                chunk = self._items.popleft()
                self._not_full.notify()
                return chunk
            return CLOSED

    def close(self, discard: bool = False) -> list[Chunk]:
        """
        Close the queue and wake all waiters.

        Args:
            discard: Drop buffered chunks so that pop() returns CLOSED
                immediately

        Returns:
            The chunks that were dropped (empty unless discard is set)
        """
        with self._lock:
            self._closed = True
            dropped: list[Chunk] = []
            if discard:
                dropped = list(self._items)
                self._items.clear()
            self._not_empty.notify_all()
            self._not_full.notify_all()
            return dropped

    @property
    def closed(self) -> bool:
        return self._closed

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)


class InFlightGate:
    """
    Counts chunks that have been fetched but not yet committed.

    The reader acquires a slot before fetching a new offset and the
    orchestrator releases it when the chunk is committed, so at most
    ``limit`` chunks are held anywhere in the pipeline at once.
    """

    def __init__(self, limit: int):
        if limit < 1:
            raise ValueError(f"limit must be >= 1, got {limit}")
        self.limit = limit
        self._count = 0
        self._cond = threading.Condition()
        self._closed = False
        self.peak = 0

    def acquire(self, timeout: Optional[float] = None) -> bool:
        """Take a slot. Returns False on timeout or once the gate is closed."""
        with self._cond:
            if not self._cond.wait_for(
                lambda: self._closed or self._count < self.limit, timeout=timeout
            ):
                return False
            if self._closed:
                return False
            self._count += 1
            self.peak = max(self.peak, self._count)
            return True

    def release(self, n: int = 1) -> None:
        with self._cond:
            if n > self._count:
                raise ValueError(
                    f"Releasing {n} slots but only {self._count} are held"
                )
            self._count -= n
            self._cond.notify_all()

    def close(self) -> None:
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    @property
    def in_flight(self) -> int:
        with self._cond:
            return self._count
