"""Main orchestrator for chunked parallel batch runs."""

from __future__ import annotations

import logging
import queue
import threading
import time
from contextlib import ExitStack
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from setproctitle import setproctitle
from tqdm import tqdm

from ..adapters.base import (
    DatasetAdapter,
    ProgressStore,
    ResultSink,
    close_resource,
    open_resource,
)
from ..config import RunConfig
from ..errors import ConfigurationError, RunCancelled
from ..types import ChunkResult, Failure, RunReport, RunState, RunStats
from .chunk_queue import ChunkQueue, InFlightGate
from .commit import CommitWindow
from .display import log_run_summary, print_completion_banner, print_run_summary
from .logger import run_log_handler
from .progress import ProgressTracker
from .reader import ReaderExhausted, ReaderFailed, RefetchSchedule, SourceReader, run_reader
from .worker import BatchTransform, RowTransform, start_workers

logger = logging.getLogger(__name__)

__all__ = ["BatchOrchestrator", "run_pipeline"]


class BatchOrchestrator:
    """
    Runs one pass of a dataset through a pool of worker threads.

    The orchestrator owns the run lifecycle
    (IDLE -> RUNNING -> DRAINING -> COMPLETED | ABORTED): it starts the
    reader and the workers, folds their results into the committed offset in
    offset order, schedules refetches of retryable failures, and drains the
    pipeline on fatal errors or cancellation. It is the only writer of the
    progress store.
    """

    def __init__(
        self,
        source: DatasetAdapter,
        sink: ResultSink,
        store: ProgressStore,
        config: Optional[RunConfig] = None,
        *,
        transform: Optional[RowTransform] = None,
        batch_transform: Optional[BatchTransform] = None,
        on_commit: Optional[Callable[[int], None]] = None,
    ):
        """
        Initialize the orchestrator.

        Args:
            source: Dataset adapter to read from
            sink: Destination for transformed outputs
            store: Durable store for the committed offset
            config: Run configuration (defaults to RunConfig())
            transform: Per-row transformation
            batch_transform: Per-chunk transformation (instead of transform)
            on_commit: Called with each new committed offset
        """
        self.source = source
        self.sink = sink
        self.store = store
        self.config = config if config is not None else RunConfig()
        self.transform = transform
        self.batch_transform = batch_transform
        self.on_commit = on_commit

        self._state = RunState.IDLE
        self.state_history: List[RunState] = [RunState.IDLE]
        self._state_lock = threading.RLock()
        self._abort_event = threading.Event()
        self._stop_event = threading.Event()
        # Shared with the reader and workers while RUNNING; closed by abort()
        self._chunk_queue: Optional[ChunkQueue] = None
        self._gate: Optional[InFlightGate] = None
        self._refetches: Optional[RefetchSchedule] = None
        self.log_path: Optional[Path] = None

        self._end_offset: Optional[int] = None
        self._failed_offset: Optional[int] = None
        self._cause: Optional[BaseException] = None

    # =========================================================================
    # Public API
    # =========================================================================

    @property
    def state(self) -> RunState:
        return self._state

    def abort(self) -> None:
        """
        Request cancellation from any thread.

        Takes effect at once: a RUNNING run moves to DRAINING, buffered
        chunks are discarded and no further chunk is fetched or dequeued.
        Transformations already running finish and are committed if they
        succeed.
        """
        with self._state_lock:
            self._abort_event.set()
            if self._state is RunState.RUNNING:
                self._begin_drain()

    def run(self) -> RunReport:
        """
        Execute the run to a terminal state.

        Returns:
            RunReport with the final state and committed offset

        Raises:
            ConfigurationError: If the configuration is invalid (no I/O is
                attempted and no worker is started)
        """
        if self._state is not RunState.IDLE:
            raise RuntimeError("A BatchOrchestrator can only be run once")

        setproctitle("chunkpipe:orchestrator")
        started = time.perf_counter()

        with ExitStack() as stack:
            for resource in (self.store, self.sink, self.source):
                stack.callback(close_resource, resource)

            self._validate()

            if self.config.log_dir is not None:
                self.log_path = stack.enter_context(
                    run_log_handler(self.config.log_dir, self.config.run_name)
                )

            for resource in (self.source, self.sink, self.store):
                open_resource(resource)

            tracker = ProgressTracker(self.store, self.config)
            if self.config.mode == "restart":
                tracker.reset()
            start_offset = tracker.load()

            report = self._execute(tracker, start_offset)

            report.elapsed_s = time.perf_counter() - started
            log = logger.info if report.ok else logger.error
            log(
                "Run %s: committed offset %d (%d rows in %.1fs)",
                report.state.value, report.committed_offset,
                report.rows_committed, report.elapsed_s,
            )
        if self.config.show_progress:
            print_completion_banner(report)
        return report

    # =========================================================================
    # Run phases
    # =========================================================================

    def _validate(self) -> None:
        """Check configuration and collaborators before any I/O."""
        self.config.validate()

        if (self.transform is None) == (self.batch_transform is None):
            raise ConfigurationError(
                "Exactly one of transform or batch_transform must be given"
            )
        fn = self.transform if self.transform is not None else self.batch_transform
        if not callable(fn):
            raise ConfigurationError(f"Transformation is not callable: {fn!r}")

        for resource, method, role in (
            (self.source, "fetch", "source"),
            (self.sink, "write", "sink"),
            (self.store, "load", "progress store"),
            (self.store, "save", "progress store"),
        ):
            if not callable(getattr(resource, method, None)):
                raise ConfigurationError(
                    f"The {role} {type(resource).__name__} has no {method}() method"
                )

    def _execute(self, tracker: ProgressTracker, start_offset: int) -> RunReport:
        """Run reader and workers until a terminal state is reached."""
        config = self.config
        chunk_queue = ChunkQueue(config.queue_capacity)
        gate = InFlightGate(config.max_in_flight)
        events: "queue.Queue[Any]" = queue.Queue()
        refetches = RefetchSchedule()
        reader = SourceReader(self.source, config, stop_event=self._stop_event)
        window = CommitWindow(start_offset)
        stats = RunStats()

        summary = dict(
            config=config,
            source=self.source,
            sink=self.sink,
            store=self.store,
            start_offset=start_offset,
        )
        log_run_summary(**summary)
        if config.show_progress:
            print_run_summary(**summary)

        with self._state_lock:
            self._chunk_queue, self._gate, self._refetches = chunk_queue, gate, refetches
            self._set_state(RunState.RUNNING)
            if self._abort_event.is_set():
                self._begin_drain()

        pbar = tqdm(
            total=self._expected_total(start_offset),
            desc=config.progress_desc,
            unit="rows",
            disable=not config.show_progress,
        )

        workers, worker_stats = start_workers(
            config.worker_count,
            chunk_queue,
            self.sink,
            events,
            transform=self.transform,
            batch_transform=self.batch_transform,
        )
        reader_thread = threading.Thread(
            target=run_reader,
            args=(reader, chunk_queue, gate, events, start_offset, refetches, self._stop_event),
            name="chunkpipe:reader",
            daemon=True,
        )
        reader_thread.start()

        completed = False
        try:
            completed = self._collect(events, window, tracker, gate, refetches, stats, pbar)
        except KeyboardInterrupt:
            logger.warning("Interrupted; draining in-flight chunks")
            self._fail(None, RunCancelled("Interrupted by user"))
        finally:
            with self._state_lock:
                if not completed:
                    self._begin_drain()
                self._stop_event.set()
                gate.close()
                refetches.close()
                chunk_queue.close()
            for thread in workers:
                thread.join()
            reader_thread.join()
            if not completed:
                self._fold_remaining(events, window, tracker, gate, stats, pbar)
            pbar.close()

        for ws in worker_stats:
            stats.merge_worker(ws)
        stats.chunks_fetched = reader.chunks_fetched
        stats.fetch_retries = reader.fetch_retries
        stats.peak_in_flight = gate.peak
        stats.peak_queue_depth = chunk_queue.high_water

        self._set_state(RunState.COMPLETED if completed else RunState.ABORTED)
        return RunReport(
            state=self._state,
            start_offset=start_offset,
            committed_offset=tracker.committed_offset,
            stats=stats,
            failed_offset=self._failed_offset,
            cause=self._cause,
        )

    def _collect(
        self,
        events: "queue.Queue[Any]",
        window: CommitWindow,
        tracker: ProgressTracker,
        gate: InFlightGate,
        refetches: RefetchSchedule,
        stats: RunStats,
        pbar: tqdm,
    ) -> bool:
        """
        Fold reader and worker events until the run completes or must drain.

        Returns:
            True on completion, False when the run has to be aborted
        """
        failures: Dict[int, int] = {}
        poll = self.config.poll_interval_s

        while True:
            if self._abort_event.is_set():
                logger.warning("Abort requested; draining in-flight chunks")
                self._fail(None, RunCancelled("Run cancelled by abort()"))
                return False

            try:
                event = events.get(timeout=poll)
            except queue.Empty:
                continue

            if isinstance(event, ChunkResult):
                if event.ok:
                    if not self._record_success(event, window, tracker, gate, stats, pbar):
                        return False
                elif not self._handle_failure(event, failures, refetches, stats):
                    return False
            elif isinstance(event, ReaderExhausted):
                self._end_offset = event.end_offset
            elif isinstance(event, ReaderFailed):
                self._fail(event.offset, event.error)
                return False

            if self._end_offset is not None and window.committed_offset >= self._end_offset:
                return True

    def _record_success(
        self,
        result: ChunkResult,
        window: CommitWindow,
        tracker: ProgressTracker,
        gate: InFlightGate,
        stats: RunStats,
        pbar: tqdm,
    ) -> bool:
        """Fold a success into the window and commit any contiguous prefix."""
        if not window.record(result.offset, result.end):
            logger.debug("Ignoring duplicate result for offset %d", result.offset)
            return True

        released = window.advance()
        if not released:
            logger.debug(
                "Offset %d done; waiting behind gap at %d",
                result.offset, window.committed_offset,
            )
            return True

        previous = tracker.committed_offset
        try:
            tracker.commit(window.committed_offset)
        except Exception as exc:
            logger.error("Could not save committed offset %d: %s", window.committed_offset, exc)
            self._fail(previous, exc)
            return False

        gate.release(len(released))
        stats.chunks_committed += len(released)
        pbar.update(tracker.committed_offset - previous)
        if self.on_commit is not None:
            try:
                self.on_commit(tracker.committed_offset)
            except Exception as exc:
                logger.error(
                    "on_commit callback failed at offset %d: %s", tracker.committed_offset, exc
                )
                self._fail(None, exc)
                return False
        return True

    def _handle_failure(
        self,
        result: ChunkResult,
        failures: Dict[int, int],
        refetches: RefetchSchedule,
        stats: RunStats,
    ) -> bool:
        """Schedule a refetch for a retryable failure, or give up on the run."""
        outcome = result.outcome
        if not isinstance(outcome, Failure):
            raise TypeError(f"Expected a Failure outcome, got {outcome!r}")

        if outcome.retryable:
            count = failures.get(result.offset, 0) + 1
            failures[result.offset] = count
            if count <= self.config.max_retries:
                delay = self.config.backoff_delay(count)
                stats.chunk_retries += 1
                logger.warning(
                    "Offset %d failed (%s); retry %d/%d in %.1fs",
                    result.offset, outcome.error, count, self.config.max_retries, delay,
                )
                refetches.schedule(result.offset, result.size, result.attempt + 1, delay)
                return True
            logger.error(
                "Offset %d still failing after %d retries: %s",
                result.offset, self.config.max_retries, outcome.error,
            )
        else:
            logger.error("Fatal failure at offset %d: %s", result.offset, outcome.error)

        self._fail(result.offset, outcome.error)
        return False

    def _fold_remaining(
        self,
        events: "queue.Queue[Any]",
        window: CommitWindow,
        tracker: ProgressTracker,
        gate: InFlightGate,
        stats: RunStats,
        pbar: tqdm,
    ) -> None:
        """Commit successes reported by workers that finished while draining."""
        while True:
            try:
                event = events.get_nowait()
            except queue.Empty:
                return
            if not isinstance(event, ChunkResult):
                continue
            if event.ok:
                if not self._record_success(event, window, tracker, gate, stats, pbar):
                    return
            else:
                logger.info("Offset %d failed while draining; not retried", event.offset)

    # =========================================================================
    # Helpers
    # =========================================================================

    def _fail(self, offset: Optional[int], cause: BaseException) -> None:
        """Record the abort boundary; the first failure wins."""
        if self._cause is None:
            self._failed_offset = offset
            self._cause = cause

    def _set_state(self, state: RunState) -> None:
        with self._state_lock:
            if state is self._state:
                return
            logger.info("State %s -> %s", self._state.value, state.value)
            self._state = state
            self.state_history.append(state)

    def _begin_drain(self) -> None:
        """Enter DRAINING: stop the reader, discard buffered chunks, release waiters."""
        with self._state_lock:
            if self._state is RunState.DRAINING:
                return
            self._set_state(RunState.DRAINING)
            self._stop_event.set()
            if self._gate is not None:
                self._gate.close()
            if self._refetches is not None:
                self._refetches.close()
            if self._chunk_queue is not None:
                dropped = self._chunk_queue.close(discard=True)
                if dropped:
                    logger.info("Discarded %d buffered chunks", len(dropped))

    def _expected_total(self, start_offset: int) -> Optional[int]:
        """Rows left to process, when the source knows its length."""
        end = self.config.stop_offset
        try:
            length = len(self.source)  # type: ignore[arg-type]
        except TypeError:
            length = None
        if length is not None:
            end = length if end is None else min(end, length)
        return None if end is None else max(0, end - start_offset)


def run_pipeline(
    source: DatasetAdapter,
    sink: ResultSink,
    store: ProgressStore,
    config: Optional[RunConfig] = None,
    *,
    transform: Optional[RowTransform] = None,
    batch_transform: Optional[BatchTransform] = None,
    on_commit: Optional[Callable[[int], None]] = None,
) -> RunReport:
    """
    Main entry point: process ``source`` into ``sink`` and return the report.

    Args:
        source: Dataset adapter to read from
        sink: Destination for transformed outputs
        store: Durable store for the committed offset
        config: Run configuration
        transform: Per-row transformation
        batch_transform: Per-chunk transformation (instead of transform)
        on_commit: Called with each new committed offset
    """
    orchestrator = BatchOrchestrator(
        source,
        sink,
        store,
        config,
        transform=transform,
        batch_transform=batch_transform,
        on_commit=on_commit,
    )
    return orchestrator.run()
