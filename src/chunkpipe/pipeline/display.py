"""Run summaries and banners for the chunk processor."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Optional

from ..config import RunConfig
from ..types import RunReport, RunState
from ..utilities.display import (
    abbreviate,
    format_banner,
    format_count,
    format_elapsed,
    format_rate,
)

logger = logging.getLogger(__name__)

__all__ = [
    "format_run_summary",
    "print_run_summary",
    "log_run_summary",
    "format_completion_banner",
    "print_completion_banner",
]

LINE_WIDTH = 100


def _describe(resource: Any) -> str:
    return abbreviate(repr(resource))


def format_run_summary(
    *,
    config: RunConfig,
    source: Any,
    sink: Any,
    store: Any,
    start_offset: int,
    start_time: Optional[datetime] = None,
    color: bool = True,
) -> str:
    """
    Build a formatted, human-readable summary of the planned run.
    """
    start_time = start_time or datetime.now()
    heading = f"Start Time: {start_time:%Y-%m-%d %H:%M:%S}"
    if color:
        heading = f"\033[31m{heading}\033[0m"

    stop = "end of data" if config.stop_offset is None else f"{config.stop_offset:,}"
    lines = [
        heading,
        ("\033[4mChunked Batch Configuration\033[0m" if color
         else "Chunked Batch Configuration"),
        f"Source:                     {_describe(source)}",
        f"Result sink:                {_describe(sink)}",
        f"Progress store:             {_describe(store)}",
        f"Mode:                       {config.mode}",
        f"Start offset:               {start_offset:,}",
        f"Stop offset:                {stop}",
        f"Chunk size:                 {config.chunk_size:,}",
        f"Workers:                    {config.worker_count}",
        f"Queue capacity:             {config.queue_capacity}",
        f"Max chunks in flight:       {config.max_in_flight}",
        f"Max retries:                {config.max_retries}",
    ]
    return "\n".join(lines) + "\n"


def print_run_summary(**kwargs) -> None:
    """Print the run summary to stdout."""
    print(format_run_summary(**kwargs), end="", flush=True)


def log_run_summary(*, color: bool = False, **kwargs) -> None:
    """Log the run summary at INFO level."""
    summary = format_run_summary(color=color, **kwargs)
    for line in summary.rstrip("\n").splitlines():
        logger.info(line)


def format_completion_banner(report: RunReport) -> str:
    """Format the terminal state, offsets and throughput of a finished run."""
    stats = report.stats
    elapsed = max(1e-9, report.elapsed_s)
    title = "Run Complete" if report.state is RunState.COMPLETED else "Run Aborted"

    lines = [
        "",
        format_banner(title, width=LINE_WIDTH),
        f"Final state:          {report.state.value.upper()}",
        f"Start offset:         {report.start_offset:,}",
        f"Committed offset:     {report.committed_offset:,}",
    ]
    if report.failed_offset is not None:
        lines.append(f"Failed offset:        {report.failed_offset:,}")
    if report.cause is not None:
        lines.append(
            f"Cause:                {abbreviate(type(report.cause).__name__ + ': ' + str(report.cause), 78)}"
        )
    lines += [
        f"Rows committed:       {format_count(report.rows_committed)}",
        f"Chunks fetched:       {stats.chunks_fetched:,} ({stats.fetch_retries} fetch retries)",
        f"Chunks succeeded:     {stats.chunks_succeeded:,}",
        f"Chunks failed:        {stats.chunks_failed:,} ({stats.chunk_retries} retried)",
        f"Peak in flight:       {stats.peak_in_flight}",
        f"Throughput:           {format_rate(report.rows_committed / elapsed)}",
        f"Elapsed:              {format_elapsed(report.elapsed_s)}",
        f"End Time:             {datetime.now():%Y-%m-%d %H:%M:%S}",
        "━" * LINE_WIDTH,
        "",
    ]
    return "\n".join(lines)


def print_completion_banner(report: RunReport) -> None:
    print(format_completion_banner(report), flush=True)
