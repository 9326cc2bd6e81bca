"""Shared types for chunked batch processing."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Sequence, Union

import numpy as np

from .errors import RunAborted

__all__ = [
    "Chunk",
    "Success",
    "Failure",
    "ChunkResult",
    "ProgressRecord",
    "RunState",
    "WorkerStats",
    "RunStats",
    "RunReport",
]


def _freeze_rows(rows: Sequence[Any]) -> Sequence[Any]:
    """Return rows in a form transformations cannot modify in place."""
    if isinstance(rows, np.ndarray):
        if rows.flags.writeable:
            rows = rows.view()
            rows.flags.writeable = False
        return rows
    if isinstance(rows, tuple):
        return rows
    return tuple(rows)


@dataclass(frozen=True)
class Chunk:
    """A fetched window of rows starting at ``offset``."""

    offset: int
    """Row index of the first row in the chunk"""

    rows: Sequence[Any]
    """Rows in dataset order: a tuple, or a read-only numpy array"""

    attempt: int = 1
    """1 for the first fetch of this offset, incremented on each refetch"""

    size: int = field(init=False)
    """Number of rows, fixed at fetch time"""

    def __post_init__(self) -> None:
        if self.offset < 0:
            raise ValueError(f"Chunk offset must be >= 0, got {self.offset}")
        object.__setattr__(self, "rows", _freeze_rows(self.rows))
        object.__setattr__(self, "size", len(self.rows))
        if self.size == 0:
            raise ValueError("Chunk must contain at least one row")

    @property
    def end(self) -> int:
        """Offset of the first row after this chunk."""
        return self.offset + self.size


@dataclass(frozen=True)
class Success:
    outputs: Sequence[Any]


@dataclass(frozen=True)
class Failure:
    error: BaseException
    retryable: bool


@dataclass(frozen=True)
class ChunkResult:
    """Outcome of one processing attempt of one chunk."""

    offset: int
    size: int
    outcome: Union[Success, Failure]
    worker_id: int = -1
    attempt: int = 1

    @property
    def end(self) -> int:
        return self.offset + self.size

    @property
    def ok(self) -> bool:
        return isinstance(self.outcome, Success)


@dataclass(frozen=True)
class ProgressRecord:
    """Offset below which every chunk is durably processed."""

    committed_offset: int = 0


class RunState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    DRAINING = "draining"
    COMPLETED = "completed"
    ABORTED = "aborted"

    @property
    def terminal(self) -> bool:
        return self in (RunState.COMPLETED, RunState.ABORTED)


@dataclass
class WorkerStats:
    """Counters owned by a single worker; merged by the orchestrator."""

    worker_id: int
    chunks_succeeded: int = 0
    chunks_failed: int = 0
    rows_in: int = 0
    rows_out: int = 0
    busy_s: float = 0.0


@dataclass
class RunStats:
    """Aggregated statistics for one run."""

    chunks_fetched: int = 0  # Successful fetches, refetches included
    fetch_retries: int = 0
    chunk_retries: int = 0
    chunks_succeeded: int = 0
    chunks_failed: int = 0
    chunks_committed: int = 0
    rows_in: int = 0
    rows_out: int = 0
    peak_in_flight: int = 0
    peak_queue_depth: int = 0
    workers: list[WorkerStats] = field(default_factory=list)

    def merge_worker(self, stats: WorkerStats) -> None:
        self.workers.append(stats)
        self.chunks_succeeded += stats.chunks_succeeded
        self.chunks_failed += stats.chunks_failed
        self.rows_in += stats.rows_in
        self.rows_out += stats.rows_out


@dataclass
class RunReport:
    """Terminal status of a run; the only user-visible outcome."""

    state: RunState
    start_offset: int
    committed_offset: int
    stats: RunStats
    failed_offset: Optional[int] = None
    cause: Optional[BaseException] = None
    elapsed_s: float = 0.0

    @property
    def ok(self) -> bool:
        return self.state is RunState.COMPLETED

    @property
    def rows_committed(self) -> int:
        return self.committed_offset - self.start_offset

    def raise_for_status(self) -> None:
        """Raise RunAborted unless the run completed."""
        if not self.ok:
            raise RunAborted(self)
