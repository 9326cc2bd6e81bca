# chunkpipe/__init__.py
"""Chunked parallel batch processing of large offset-addressable datasets."""

from .config import RunConfig
from .errors import (
    ChunkpipeError,
    ConfigurationError,
    TransientError,
    RetryableError,
    FatalError,
    ProgressError,
    RunCancelled,
    RunAborted,
)
from .types import Chunk, ChunkResult, Success, Failure, ProgressRecord, RunState, RunStats, RunReport
from .pipeline import BatchOrchestrator, run_log_handler, run_pipeline, setup_logger

__all__ = [
    # Pipeline API
    "run_pipeline",
    "BatchOrchestrator",

    # Logging
    "setup_logger",
    "run_log_handler",

    # Configuration
    "RunConfig",

    # Data model
    "Chunk",
    "ChunkResult",
    "Success",
    "Failure",
    "ProgressRecord",
    "RunState",
    "RunStats",
    "RunReport",

    # Errors
    "ChunkpipeError",
    "ConfigurationError",
    "TransientError",
    "RetryableError",
    "FatalError",
    "ProgressError",
    "RunCancelled",
    "RunAborted",
]
