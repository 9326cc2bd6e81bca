"""Source reader: offset-addressed fetches and the reader thread loop."""

from __future__ import annotations

import heapq
import logging
import queue
import threading
import time
from dataclasses import dataclass
from typing import Any, List, Optional, Tuple

from setproctitle import setthreadtitle

from ..adapters.base import DatasetAdapter
from ..config import RunConfig
from ..errors import FatalError
from ..types import Chunk
from .chunk_queue import ChunkQueue, InFlightGate
from .retry import call_with_retries

logger = logging.getLogger(__name__)

__all__ = [
    "SourceReader",
    "RefetchSchedule",
    "ReaderExhausted",
    "ReaderFailed",
    "run_reader",
]


@dataclass(frozen=True)
class ReaderExhausted:
    """Posted once the source reports end of data at ``end_offset``."""

    end_offset: int


@dataclass(frozen=True)
class ReaderFailed:
    """Posted when a fetch fails fatally; the reader thread then exits."""

    offset: int
    error: BaseException


class SourceReader:
    """Fetches chunks from a dataset adapter with transient-error retries."""

    def __init__(
        self,
        adapter: DatasetAdapter,
        config: RunConfig,
        stop_event: Optional[threading.Event] = None,
    ):
        self.adapter = adapter
        self.config = config
        self.stop_event = stop_event
        # Single writer: only the reader thread updates these
        self.chunks_fetched = 0
        self.fetch_retries = 0

    def fetch(self, offset: int, size: int, attempt: int = 1) -> Optional[Chunk]:
        """
        Fetch rows ``[offset, offset + size)``.

        Returns:
            The chunk, or None at end of data

        Raises:
            TransientError: If retries are exhausted
            FatalError: If the adapter returns more rows than requested
        """
        stop = self.config.stop_offset
        if stop is not None:
            if offset >= stop:
                return None
            size = min(size, stop - offset)

        def _fetch():
            return self.adapter.fetch(offset, size)

        rows = call_with_retries(
            _fetch,
            self.config,
            what=f"Fetch of offset {offset}",
            stop_event=self.stop_event,
            on_retry=self._count_retry,
        )
        if rows is None or len(rows) == 0:
            return None
        if len(rows) > size:
            raise FatalError(
                f"Source returned {len(rows)} rows for offset {offset}, "
                f"more than the {size} requested"
            )
        self.chunks_fetched += 1
        logger.debug("Fetched offset %d (%d rows, attempt %d)", offset, len(rows), attempt)
        return Chunk(offset=offset, rows=rows, attempt=attempt)

    def _count_retry(self, attempt: int, exc: BaseException) -> None:
        self.fetch_retries += 1


class RefetchSchedule:
    """Offsets waiting to be fetched again, ordered by the time they are due."""

    def __init__(self):
        self._heap: List[Tuple[float, int, int, int]] = []
        self._cond = threading.Condition()
        self._closed = False

    def schedule(self, offset: int, size: int, attempt: int, delay: float = 0.0) -> None:
        with self._cond:
            heapq.heappush(self._heap, (time.monotonic() + delay, offset, size, attempt))
            self._cond.notify_all()

    def pop_ready(self) -> Optional[Tuple[int, int, int]]:
        """Return (offset, size, attempt) of a due refetch, if any."""
        with self._cond:
            if self._heap and self._heap[0][0] <= time.monotonic():
                _, offset, size, attempt = heapq.heappop(self._heap)
                return offset, size, attempt
            return None

    def wait(self, timeout: float) -> None:
        """Sleep until a refetch may be due, the timeout passes, or close()."""
        with self._cond:
            if self._closed:
                return
            if self._heap:
                timeout = min(timeout, max(0.0, self._heap[0][0] - time.monotonic()))
            self._cond.wait(timeout)

    def close(self) -> None:
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    def __len__(self) -> int:
        with self._cond:
            return len(self._heap)


def run_reader(
    reader: SourceReader,
    chunk_queue: ChunkQueue,
    gate: InFlightGate,
    events: "queue.Queue[Any]",
    start_offset: int,
    refetches: RefetchSchedule,
    stop_event: threading.Event,
) -> None:
    """
    Reader thread body.

    Fetches sequential chunks from ``start_offset`` and pushes them to the
    chunk queue, serving due refetches first. Keeps running after end of
    data so that late refetches can still be served, until ``stop_event``
    is set.
    """
    setthreadtitle("chunkpipe:reader")
    poll = reader.config.poll_interval_s
    chunk_size = reader.config.chunk_size
    offset = start_offset
    exhausted = False
    current = offset

    try:
        while not stop_event.is_set():
            request = refetches.pop_ready()
            if request is not None:
                current, size, attempt = request
                chunk = reader.fetch(current, size, attempt=attempt)
                if chunk is None or chunk.size != size:
                    raise FatalError(
                        f"Refetch of offset {current} returned "
                        f"{0 if chunk is None else chunk.size} rows, expected {size}"
                    )
                _push(chunk, chunk_queue, stop_event, poll)
                continue

            if exhausted:
                refetches.wait(poll)
                continue

            if not gate.acquire(timeout=poll):
                continue

            current = offset
            chunk = reader.fetch(offset, chunk_size)
            if chunk is None:
                gate.release()
                exhausted = True
                logger.info("End of data at offset %d", offset)
                events.put(ReaderExhausted(end_offset=offset))
                continue

            offset = chunk.end
            _push(chunk, chunk_queue, stop_event, poll)

    except Exception as exc:
        if stop_event.is_set():
            logger.debug("Reader stopped during fetch of offset %d: %s", current, exc)
        else:
            logger.error("Reader failed at offset %d: %s", current, exc)
            events.put(ReaderFailed(offset=current, error=exc))


def _push(
    chunk: Chunk,
    chunk_queue: ChunkQueue,
    stop_event: threading.Event,
    poll: float,
) -> None:
    while not chunk_queue.push(chunk, timeout=poll):
        if stop_event.is_set() or chunk_queue.closed:
            return
