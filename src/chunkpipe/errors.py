"""Exception hierarchy for the chunked batch processor."""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .types import RunReport

__all__ = [
    "ChunkpipeError",
    "ConfigurationError",
    "TransientError",
    "RetryableError",
    "FatalError",
    "ProgressError",
    "RunCancelled",
    "RunAborted",
]


class ChunkpipeError(Exception):
    """Base class for all errors raised by chunkpipe."""


class ConfigurationError(ChunkpipeError, ValueError):
    """Invalid run configuration, detected before any I/O."""


class TransientError(ChunkpipeError):
    """
    Temporary I/O failure in a source, sink or progress store.

    Raised by adapters; the pipeline retries with backoff.
    """


class RetryableError(ChunkpipeError):
    """Raised by a transformation when the chunk should be processed again."""


class FatalError(ChunkpipeError):
    """Raised by a transformation when the run cannot safely continue."""


class ProgressError(ChunkpipeError):
    """Attempt to move the committed offset backwards."""


class RunCancelled(ChunkpipeError):
    """Recorded as the abort cause when a run is cancelled externally."""


class RunAborted(ChunkpipeError):
    """Raised by RunReport.raise_for_status() for a run that did not complete."""

    def __init__(self, report: "RunReport", message: Optional[str] = None):
        self.report = report
        if message is None:
            message = (
                f"Run aborted at committed offset {report.committed_offset}"
                + (f" (failed offset {report.failed_offset})"
                   if report.failed_offset is not None else "")
                + (f": {report.cause}" if report.cause is not None else "")
            )
        super().__init__(message)
