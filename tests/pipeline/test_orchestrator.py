# tests/pipeline/test_orchestrator.py
from __future__ import annotations

import random
import threading
import time

import pytest

from chunkpipe import (
    BatchOrchestrator,
    ConfigurationError,
    FatalError,
    RetryableError,
    RunAborted,
    RunCancelled,
    RunConfig,
    RunState,
    TransientError,
    run_pipeline,
)
from chunkpipe.adapters.sinks import MemorySink
from chunkpipe.adapters.sources import SequenceSource
from chunkpipe.adapters.stores import MemoryProgressStore


# --- Test doubles -------------------------------------------------------------

class RecordingSource(SequenceSource):
    """SequenceSource that records every fetch and supports open/close."""

    def __init__(self, rows, *, transient_failures=0, broken_from=None):
        super().__init__(rows)
        self.transient_failures = transient_failures
        self.broken_from = broken_from
        self.calls: list[tuple[int, int]] = []
        self.chunks: list[tuple[int, int]] = []  # non-empty results
        self.opened = 0
        self.closed = 0
        self._failures: dict[int, int] = {}
        self.on_fetch = None

    def open(self):
        self.opened += 1

    def close(self):
        self.closed += 1

    def fetch(self, offset, size):
        self.calls.append((offset, size))
        if self.broken_from is not None and offset >= self.broken_from:
            raise TransientError(f"unavailable at {offset}")
        seen = self._failures.get(offset, 0)
        if seen < self.transient_failures:
            self._failures[offset] = seen + 1
            raise TransientError(f"busy at {offset}")
        rows = super().fetch(offset, size)
        if rows:
            if self.on_fetch is not None:
                self.on_fetch(offset, len(rows))
            self.chunks.append((offset, len(rows)))
        return rows


class ClosingSink(MemorySink):
    def __init__(self):
        super().__init__()
        self.opened = 0
        self.closed = 0

    def open(self):
        self.opened += 1

    def close(self):
        self.closed += 1


class FailingStore(MemoryProgressStore):
    """Raises a non-transient error once asked to save ``fail_from`` or more."""

    def __init__(self, fail_from):
        super().__init__()
        self.fail_from = fail_from

    def save(self, offset):
        if offset >= self.fail_from:
            raise OSError("progress volume is read-only")
        super().save(offset)


def make_config(**kw) -> RunConfig:
    base = dict(
        chunk_size=1000,
        worker_count=4,
        queue_capacity=4,
        max_retries=2,
        backoff_initial_s=0.0,
        poll_interval_s=0.01,
    )
    base.update(kw)
    return RunConfig(**base)


def double(row):
    return row * 2


# --- Completeness -------------------------------------------------------------

def test_concrete_scenario_ten_thousand_rows():
    rows = list(range(10_000))
    source = RecordingSource(rows)
    sink = MemorySink()
    store = MemoryProgressStore()

    report = run_pipeline(source, sink, store, make_config(), transform=double)

    assert report.state is RunState.COMPLETED
    assert report.ok
    assert report.committed_offset == 10_000
    assert report.failed_offset is None and report.cause is None
    assert report.stats.chunks_fetched == 10
    assert report.stats.chunks_succeeded == 10
    assert report.stats.chunks_failed == 0
    assert report.stats.chunks_committed == 10
    assert len(source.chunks) == 10

    assert len(sink.writes) == 10
    offsets = sorted(off for off, _ in sink.writes)
    assert offsets == list(range(0, 10_000, 1000))
    assert all(n == 1000 for _, n in sink.writes)
    assert sink.rows() == [r * 2 for r in rows]
    assert store.offset == 10_000


@pytest.mark.parametrize("total, chunk_size", [(10_500, 1000), (7, 3), (1, 5), (999, 1000)])
def test_completeness_reconstructs_source(total, chunk_size):
    rows = [f"row-{i}" for i in range(total)]
    sink = MemorySink()
    report = run_pipeline(
        SequenceSource(rows), sink, MemoryProgressStore(),
        make_config(chunk_size=chunk_size, worker_count=3, queue_capacity=5),
        transform=str.upper,
    )
    assert report.ok
    assert report.committed_offset == total
    assert sink.rows() == [r.upper() for r in rows]

    # Disjoint, contiguous coverage of [0, total)
    spans = sorted((off, off + n) for off, n in sink.writes)
    assert spans[0][0] == 0 and spans[-1][1] == total
    assert all(a[1] == b[0] for a, b in zip(spans, spans[1:]))


def test_empty_dataset_completes_at_zero():
    sink = MemorySink()
    report = run_pipeline(SequenceSource([]), sink, MemoryProgressStore(), make_config(),
                          transform=double)
    assert report.state is RunState.COMPLETED
    assert report.committed_offset == 0
    assert sink.writes == []


def test_batch_transform():
    sink = MemorySink()
    report = run_pipeline(
        SequenceSource(list(range(100))), sink, MemoryProgressStore(),
        make_config(chunk_size=10, worker_count=2, queue_capacity=2),
        batch_transform=lambda rows: [sum(rows)],
    )
    assert report.ok
    assert sink.rows() == [sum(range(i, i + 10)) for i in range(0, 100, 10)]
    assert report.stats.rows_in == 100
    assert report.stats.rows_out == 10


# --- Resumability -------------------------------------------------------------

def test_resume_after_abort_processes_only_remaining_chunks():
    rows = list(range(10_000))
    store = MemoryProgressStore()
    sink1 = MemorySink()
    orch = None

    def stop_at_3000(offset):
        if offset >= 3000:
            orch.abort()

    orch = BatchOrchestrator(
        SequenceSource(rows), sink1, store,
        make_config(worker_count=2, queue_capacity=2),
        transform=double, on_commit=stop_at_3000,
    )
    first = orch.run()
    assert first.state is RunState.ABORTED
    assert isinstance(first.cause, RunCancelled)
    k = first.committed_offset
    assert 3000 <= k < 10_000
    assert store.offset == k

    source2 = RecordingSource(rows)
    sink2 = MemorySink()
    second = run_pipeline(source2, sink2, store, make_config(), transform=double)

    assert second.ok
    assert second.start_offset == k
    assert second.committed_offset == 10_000
    # Nothing below K reprocessed, nothing at/above K skipped
    assert min(off for off, _ in source2.calls) == k
    assert sorted(sink2.results) == list(range(k, 10_000, 1000))

    merged = dict(sink1.results)
    merged.update(sink2.results)
    assert [r for off in sorted(merged) for r in merged[off]] == [r * 2 for r in rows]


def test_restart_mode_ignores_stored_progress():
    store = MemoryProgressStore(offset=5000)
    sink = MemorySink()
    report = run_pipeline(
        SequenceSource(list(range(6000))), sink, store,
        make_config(mode="restart"), transform=double,
    )
    assert report.ok
    assert report.start_offset == 0
    assert store.history[0] == 0
    assert sorted(sink.results) == list(range(0, 6000, 1000))


def test_resume_when_already_complete_does_nothing():
    source = RecordingSource(list(range(3000)))
    sink = MemorySink()
    report = run_pipeline(source, sink, MemoryProgressStore(offset=3000), make_config(),
                          transform=double)
    assert report.ok
    assert report.committed_offset == 3000
    assert sink.writes == []
    assert source.chunks == []


def test_stop_offset_bounds_the_run():
    sink = MemorySink()
    report = run_pipeline(
        SequenceSource(list(range(10_000))), sink, MemoryProgressStore(),
        make_config(stop_offset=3500), transform=double,
    )
    assert report.ok
    assert report.committed_offset == 3500
    assert sorted(sink.results) == [0, 1000, 2000, 3000]
    assert len(sink.results[3000]) == 500


# --- Backpressure -------------------------------------------------------------

@pytest.mark.parametrize("workers, capacity", [(1, 1), (2, 5), (4, 4), (3, 8)])
def test_in_flight_chunks_never_exceed_bound(workers, capacity):
    limit = workers + capacity
    store = MemoryProgressStore()
    source = RecordingSource(list(range(4000)))
    violations = []

    def check(offset, size):
        # Distinct chunks fetched so far that are not yet committed
        uncommitted = {off for off, n in source.chunks if off + n > store.offset}
        uncommitted.add(offset)
        if len(uncommitted) > limit:
            violations.append((offset, len(uncommitted)))

    source.on_fetch = check
    rng = random.Random(7)

    def slow(rows):
        time.sleep(rng.uniform(0, 0.004))
        return list(rows)

    report = run_pipeline(
        source, MemorySink(), store,
        make_config(chunk_size=50, worker_count=workers, queue_capacity=capacity),
        batch_transform=slow,
    )
    assert report.ok
    assert violations == []
    assert report.stats.peak_in_flight <= limit
    assert report.stats.peak_queue_depth <= capacity


# --- Commit monotonicity --------------------------------------------------------

def test_commits_are_monotonic_and_never_skip_a_gap():
    sink = MemorySink()
    chunk_size = 100
    total = 3000
    gaps_skipped = []

    class GapCheckingStore(MemoryProgressStore):
        def save(self, offset):
            written = set(sink.results)
            missing = [o for o in range(0, offset, chunk_size) if o not in written]
            if missing:
                gaps_skipped.append((offset, missing))
            super().save(offset)

    store = GapCheckingStore()

    def uneven(rows):
        # First chunk is slowest so later chunks finish out of order
        time.sleep(0.05 if rows[0] == 0 else random.uniform(0, 0.003))
        return list(rows)

    report = run_pipeline(
        SequenceSource(list(range(total))), sink, store,
        make_config(chunk_size=chunk_size, worker_count=4, queue_capacity=6),
        batch_transform=uneven,
    )
    assert report.ok
    assert gaps_skipped == []
    assert store.history == sorted(store.history)
    assert len(set(store.history)) == len(store.history)
    assert all(off % chunk_size == 0 for off in store.history)
    assert store.history[-1] == total
    # Chunk 0 held everything back, so the first commit covers several chunks
    assert store.history[0] > chunk_size


# --- Retries ----------------------------------------------------------------

def test_retryable_failure_then_success_is_committed_once():
    max_retries = 3
    failures = {"left": max_retries - 1}
    lock = threading.Lock()

    def flaky(row):
        if row == 2000:
            with lock:
                if failures["left"] > 0:
                    failures["left"] -= 1
                    raise RetryableError("geocoder timeout")
        return row + 1

    source = RecordingSource(list(range(5000)))
    sink = MemorySink()
    report = run_pipeline(source, sink, MemoryProgressStore(),
                          make_config(max_retries=max_retries), transform=flaky)

    assert report.ok
    assert report.committed_offset == 5000
    assert report.stats.chunk_retries == max_retries - 1
    assert report.stats.chunks_failed == max_retries - 1
    # Each retry is a fresh fetch of the same offset
    assert [c for c in source.chunks if c[0] == 2000] == [(2000, 1000)] * max_retries
    # Only the successful attempt reached the sink
    assert [w for w in sink.writes if w[0] == 2000] == [(2000, 1000)]
    assert sink.results[2000] == list(range(2001, 3001))


def test_retries_exhausted_aborts_at_failing_chunk():
    def always_retry(row):
        if 2000 <= row < 3000:
            raise RetryableError("still unavailable")
        return row

    source = RecordingSource(list(range(5000)))
    report = run_pipeline(source, MemorySink(), MemoryProgressStore(),
                          make_config(max_retries=2), transform=always_retry)

    assert report.state is RunState.ABORTED
    assert report.committed_offset == 2000
    assert report.failed_offset == 2000
    assert isinstance(report.cause, RetryableError)
    assert len([c for c in source.chunks if c[0] == 2000]) == 3
    with pytest.raises(RunAborted) as ei:
        report.raise_for_status()
    assert ei.value.report is report


def test_transient_sink_error_is_retried():
    class FlakySink(MemorySink):
        def __init__(self):
            super().__init__()
            self.failed = False

        def write(self, offset, outputs):
            if offset == 1000 and not self.failed:
                self.failed = True
                raise TransientError("503 from object store")
            super().write(offset, outputs)

    sink = FlakySink()
    report = run_pipeline(SequenceSource(list(range(3000))), sink, MemoryProgressStore(),
                          make_config(), transform=double)
    assert report.ok
    assert report.stats.chunk_retries == 1
    assert sorted(sink.results) == [0, 1000, 2000]


def test_transient_fetch_errors_are_absorbed():
    source = RecordingSource(list(range(10_000)), transient_failures=2)
    report = run_pipeline(source, MemorySink(), MemoryProgressStore(),
                          make_config(max_retries=2), transform=double)
    assert report.ok
    # Ten chunks plus the end-of-data probe, two failures each
    assert report.stats.fetch_retries == 22
    assert report.stats.chunks_fetched == 10


def test_persistent_fetch_errors_abort_at_fetch_offset():
    source = RecordingSource(list(range(10_000)), broken_from=3000)
    report = run_pipeline(source, MemorySink(), MemoryProgressStore(),
                          make_config(max_retries=1), transform=double)
    assert report.state is RunState.ABORTED
    assert report.failed_offset == 3000
    assert report.committed_offset == 3000
    assert isinstance(report.cause, TransientError)


# --- Fatal abort --------------------------------------------------------------

def test_fatal_failure_aborts_with_boundary_at_failing_chunk():
    def corrupt_at_5000(row):
        if row == 5000:
            raise FatalError("checksum mismatch")
        return row

    store = MemoryProgressStore()
    orch = BatchOrchestrator(
        SequenceSource(list(range(10_000))), MemorySink(), store,
        make_config(), transform=corrupt_at_5000,
    )
    report = orch.run()

    assert report.state is RunState.ABORTED
    assert report.committed_offset == 5000
    assert report.failed_offset == 5000
    assert isinstance(report.cause, FatalError)
    assert store.offset == 5000
    assert max(store.history) == 5000
    assert orch.state_history == [
        RunState.IDLE, RunState.RUNNING, RunState.DRAINING, RunState.ABORTED,
    ]


def test_fatal_failure_with_many_buffered_chunks():
    gate = threading.Event()

    def transform(row):
        if row == 5000:
            # Let the reader fill the queue before failing
            gate.wait(0.2)
            raise FatalError("corrupt chunk")
        return row

    store = MemoryProgressStore()
    report = run_pipeline(
        SequenceSource(list(range(50_000))), MemorySink(), store,
        make_config(worker_count=2, queue_capacity=20), transform=transform,
    )
    assert report.state is RunState.ABORTED
    assert report.committed_offset == 5000
    assert store.offset == 5000


def test_progress_store_failure_aborts_with_last_saved_offset():
    store = FailingStore(fail_from=3000)
    report = run_pipeline(SequenceSource(list(range(10_000))), MemorySink(), store,
                          make_config(worker_count=1, queue_capacity=1), transform=double)
    assert report.state is RunState.ABORTED
    assert isinstance(report.cause, OSError)
    assert report.committed_offset == store.offset
    assert report.committed_offset < 3000


def test_unexpected_transform_exception_is_fatal():
    report = run_pipeline(
        SequenceSource(list(range(2000))), MemorySink(), MemoryProgressStore(),
        make_config(), transform=lambda row: 1 / (row - 1500),
    )
    assert report.state is RunState.ABORTED
    assert report.failed_offset == 1000
    assert isinstance(report.cause, ZeroDivisionError)


# --- Lifecycle ----------------------------------------------------------------

def test_invalid_config_fails_before_io_and_releases_resources():
    source = RecordingSource(list(range(100)))
    sink = ClosingSink()
    with pytest.raises(ConfigurationError):
        run_pipeline(source, sink, MemoryProgressStore(),
                     make_config(worker_count=4, queue_capacity=2), transform=double)
    assert source.calls == []
    assert source.opened == 0 and sink.opened == 0
    assert source.closed == 1 and sink.closed == 1


def test_missing_or_double_transform_is_a_configuration_error():
    for kwargs in ({}, {"transform": double, "batch_transform": list}):
        with pytest.raises(ConfigurationError):
            run_pipeline(SequenceSource([1]), MemorySink(), MemoryProgressStore(),
                         make_config(), **kwargs)


def reject(row):
    raise FatalError("bad row")


def test_resources_opened_once_and_closed_on_completion_and_abort():
    for transform in (double, reject):
        source = RecordingSource(list(range(3000)))
        sink = ClosingSink()
        run_pipeline(source, sink, MemoryProgressStore(), make_config(), transform=transform)
        assert (source.opened, source.closed) == (1, 1)
        assert (sink.opened, sink.closed) == (1, 1)


def test_state_history_on_completion_and_single_use():
    orch = BatchOrchestrator(SequenceSource(list(range(10))), MemorySink(),
                             MemoryProgressStore(), make_config(chunk_size=3),
                             transform=double)
    assert orch.state is RunState.IDLE
    report = orch.run()
    assert report.ok
    assert orch.state_history == [RunState.IDLE, RunState.RUNNING, RunState.COMPLETED]
    with pytest.raises(RuntimeError):
        orch.run()


def test_abort_from_another_thread_lets_started_chunks_finish():
    started = threading.Event()
    finished = []

    def slow(rows):
        started.set()
        time.sleep(0.1)
        finished.append(rows[0])
        return list(rows)

    store = MemoryProgressStore()
    sink = MemorySink()
    orch = BatchOrchestrator(
        SequenceSource(list(range(100_000))), sink, store,
        make_config(chunk_size=100, worker_count=2, queue_capacity=2),
        batch_transform=slow,
    )
    threading.Thread(target=lambda: (started.wait(5.0), orch.abort()), daemon=True).start()
    report = orch.run()

    assert report.state is RunState.ABORTED
    assert isinstance(report.cause, RunCancelled)
    assert report.failed_offset is None
    # Every started transformation completed and reached the sink
    assert sorted(finished) == sorted(sink.results)
    assert report.committed_offset == store.offset
    assert report.committed_offset < 100_000


def test_show_progress_prints_summary_and_banner(capsys):
    report = run_pipeline(
        SequenceSource(list(range(50))), MemorySink(), MemoryProgressStore(),
        make_config(chunk_size=10, show_progress=True), transform=double,
    )
    assert report.ok
    out, _ = capsys.readouterr()
    assert "Chunked Batch Configuration" in out
    assert "Run Complete" in out
    assert "Committed offset:     50" in out


# --- Draining -------------------------------------------------------------------

class BusyOnceStore(MemoryProgressStore):
    """Raises TransientError on the first save only."""

    def __init__(self):
        super().__init__()
        self.attempts = 0

    def save(self, offset):
        self.attempts += 1
        if self.attempts == 1:
            raise TransientError("store briefly busy")
        super().save(offset)


def test_transient_store_error_while_draining_is_retried():
    def transform(rows):
        if rows[0] == 0:
            time.sleep(0.3)  # finishes after the failure below is seen
        elif rows[0] == 1000:
            raise FatalError("corrupt chunk")
        return list(rows)

    store = BusyOnceStore()
    report = run_pipeline(
        SequenceSource(list(range(3000))), MemorySink(), store,
        make_config(worker_count=2, queue_capacity=2, max_retries=2),
        batch_transform=transform,
    )
    assert report.state is RunState.ABORTED
    assert report.failed_offset == 1000
    assert report.committed_offset == 1000
    assert store.offset == 1000
    assert store.attempts == 2


def test_transform_cannot_mutate_fetched_rows():
    class ListSource(SequenceSource):
        def fetch(self, offset, size):
            return list(super().fetch(offset, size))

    seen = []

    def clear_rows(rows):
        seen.append(type(rows))
        rows.clear()
        return []

    report = run_pipeline(
        ListSource(list(range(3000))), MemorySink(), MemoryProgressStore(),
        make_config(worker_count=1, queue_capacity=1), batch_transform=clear_rows,
    )
    assert set(seen) == {tuple}
    assert report.state is RunState.ABORTED
    assert report.failed_offset == 0
    assert report.committed_offset == 0
    assert isinstance(report.cause, AttributeError)


def test_abort_stops_dequeuing_immediately():
    started = []
    states_after_abort = []
    orch = None

    def transform(rows):
        started.append(rows[0])
        if rows[0] == 300:
            orch.abort()
            # Observed from the worker thread, before the poll loop runs
            states_after_abort.append(orch.state)
        time.sleep(0.02)
        return list(rows)

    sink = MemorySink()
    orch = BatchOrchestrator(
        SequenceSource(list(range(2000))), sink, MemoryProgressStore(),
        # Long poll interval: nothing may depend on the orchestrator noticing
        make_config(chunk_size=100, worker_count=1, queue_capacity=4, poll_interval_s=0.5),
        batch_transform=transform,
    )
    report = orch.run()

    assert started == [0, 100, 200, 300]
    assert states_after_abort == [RunState.DRAINING]
    assert report.state is RunState.ABORTED
    assert isinstance(report.cause, RunCancelled)
    assert report.committed_offset == 400
    assert sorted(sink.results) == [0, 100, 200, 300]
    assert orch.state_history == [
        RunState.IDLE, RunState.RUNNING, RunState.DRAINING, RunState.ABORTED,
    ]


def test_abort_before_run_processes_nothing():
    source = RecordingSource(list(range(1000)))
    orch = BatchOrchestrator(source, MemorySink(), MemoryProgressStore(),
                             make_config(chunk_size=100), transform=double)
    orch.abort()
    report = orch.run()
    assert report.state is RunState.ABORTED
    assert isinstance(report.cause, RunCancelled)
    assert report.committed_offset == 0
    assert report.stats.chunks_succeeded == 0


def test_failing_on_commit_callback_aborts_with_report():
    def callback(offset):
        if offset >= 2000:
            raise RuntimeError("dashboard unreachable")

    store = MemoryProgressStore()
    report = run_pipeline(
        SequenceSource(list(range(10_000))), MemorySink(), store,
        make_config(worker_count=1, queue_capacity=1), transform=double,
        on_commit=callback,
    )
    assert report.state is RunState.ABORTED
    assert isinstance(report.cause, RuntimeError)
    assert report.failed_offset is None
    assert report.committed_offset == store.offset
    assert report.committed_offset >= 2000
