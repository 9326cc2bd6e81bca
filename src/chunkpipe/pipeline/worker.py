"""Worker threads: transform chunks and hand outputs to the sink."""

from __future__ import annotations

import logging
import queue
import threading
import time
from typing import Any, Callable, List, Optional, Sequence

from setproctitle import setthreadtitle

from ..adapters.base import ResultSink
from ..errors import RetryableError, TransientError
from ..types import Chunk, ChunkResult, Failure, Success, WorkerStats
from .chunk_queue import CLOSED, ChunkQueue

logger = logging.getLogger(__name__)

__all__ = ["RowTransform", "BatchTransform", "process_chunk", "worker_loop", "start_workers"]

RowTransform = Callable[[Any], Any]
BatchTransform = Callable[[Sequence[Any]], Sequence[Any]]


def _apply(
    chunk: Chunk,
    transform: Optional[RowTransform],
    batch_transform: Optional[BatchTransform],
) -> List[Any]:
    if batch_transform is not None:
        return list(batch_transform(chunk.rows))
    return [transform(row) for row in chunk.rows]


def process_chunk(
    chunk: Chunk,
    sink: ResultSink,
    *,
    transform: Optional[RowTransform] = None,
    batch_transform: Optional[BatchTransform] = None,
    worker_id: int = -1,
    stats: Optional[WorkerStats] = None,
) -> ChunkResult:
    """
    Transform one chunk and write its outputs to the sink.

    Never retries and never raises for processing errors; the outcome is
    classified into the returned ChunkResult:

    - RetryableError from the transformation, or TransientError from the
      sink, gives Failure(retryable=True)
    - anything else gives Failure(retryable=False)
    """
    started = time.perf_counter()

    def _result(outcome) -> ChunkResult:
        if stats is not None:
            stats.busy_s += time.perf_counter() - started
            stats.rows_in += chunk.size
            if isinstance(outcome, Success):
                stats.chunks_succeeded += 1
                stats.rows_out += len(outcome.outputs)
            else:
                stats.chunks_failed += 1
        return ChunkResult(
            offset=chunk.offset,
            size=chunk.size,
            outcome=outcome,
            worker_id=worker_id,
            attempt=chunk.attempt,
        )

    try:
        outputs = _apply(chunk, transform, batch_transform)
    except RetryableError as exc:
        logger.warning(
            "Worker %s: retryable error at offset %d: %s", worker_id, chunk.offset, exc
        )
        return _result(Failure(error=exc, retryable=True))
    except Exception as exc:
        logger.error(
            "Worker %s: fatal error at offset %d: %s", worker_id, chunk.offset, exc
        )
        return _result(Failure(error=exc, retryable=False))

    try:
        sink.write(chunk.offset, outputs)
    except TransientError as exc:
        logger.warning(
            "Worker %s: sink write failed at offset %d: %s", worker_id, chunk.offset, exc
        )
        return _result(Failure(error=exc, retryable=True))
    except Exception as exc:
        logger.error(
            "Worker %s: sink write failed at offset %d: %s", worker_id, chunk.offset, exc
        )
        return _result(Failure(error=exc, retryable=False))

    logger.debug(
        "Worker %s: offset %d done (%d rows in, %d out)",
        worker_id, chunk.offset, chunk.size, len(outputs),
    )
    return _result(Success(outputs=outputs))


def worker_loop(
    worker_id: int,
    chunk_queue: ChunkQueue,
    sink: ResultSink,
    events: "queue.Queue[Any]",
    stats: WorkerStats,
    *,
    transform: Optional[RowTransform] = None,
    batch_transform: Optional[BatchTransform] = None,
) -> None:
    """Pop chunks until the queue is closed, posting one result per chunk."""
    setthreadtitle(f"chunkpipe:worker-{worker_id:03d}")

    while True:
        chunk = chunk_queue.pop()
        if chunk is CLOSED:
            break
        if chunk is None:  # Only on timeout, which pop() without one never hits
            continue
        result = process_chunk(
            chunk,
            sink,
            transform=transform,
            batch_transform=batch_transform,
            worker_id=worker_id,
            stats=stats,
        )
        events.put(result)

    logger.debug("Worker %s exiting", worker_id)


def start_workers(
    worker_count: int,
    chunk_queue: ChunkQueue,
    sink: ResultSink,
    events: "queue.Queue[Any]",
    *,
    transform: Optional[RowTransform] = None,
    batch_transform: Optional[BatchTransform] = None,
) -> tuple[list[threading.Thread], list[WorkerStats]]:
    """
    Start the worker pool.

    Returns:
        The started threads and the per-worker stats objects they update
    """
    threads = []
    all_stats = []
    for worker_id in range(worker_count):
        stats = WorkerStats(worker_id=worker_id)
        thread = threading.Thread(
            target=worker_loop,
            args=(worker_id, chunk_queue, sink, events, stats),
            kwargs={"transform": transform, "batch_transform": batch_transform},
            name=f"chunkpipe:worker-{worker_id}",
            daemon=True,
        )
        thread.start()
        threads.append(thread)
        all_stats.append(stats)
    return threads, all_stats
