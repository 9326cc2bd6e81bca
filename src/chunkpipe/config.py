# chunkpipe/config.py
"""Configuration for chunked batch runs."""
from __future__ import annotations

import os
from dataclasses import dataclass, fields
from typing import Any, Literal, Mapping, Optional, Union

from .errors import ConfigurationError

__all__ = ["RunConfig"]

# Option names accepted by RunConfig.from_mapping in addition to field names.
_ALIASES = {
    "chunkSize": "chunk_size",
    "workerCount": "worker_count",
    "queueCapacity": "queue_capacity",
    "maxRetries": "max_retries",
    "stopOffset": "stop_offset",
    "runName": "run_name",
    "logDir": "log_dir",
}


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


@dataclass(frozen=True)
class RunConfig:
    """Run configuration for the chunk processor."""

    # Core
    chunk_size: int = 1000
    worker_count: int = 4
    queue_capacity: int = 4  # Must be >= worker_count
    max_retries: int = 2

    # Backoff shared by fetch, refetch and progress-save retries
    backoff_initial_s: float = 0.5
    backoff_factor: float = 2.0
    backoff_max_s: float = 30.0

    # Run control
    mode: Literal["resume", "restart"] = "resume"
    stop_offset: Optional[int] = None  # Exclusive upper bound on rows processed
    poll_interval_s: float = 0.1

    # Progress reporting and logs
    show_progress: bool = False
    progress_desc: str = "Rows committed"
    run_name: str = "chunkpipe"  # Prefix of the run log file
    log_dir: Optional[Union[str, os.PathLike]] = None  # Per-run log file when set

    @classmethod
    def from_mapping(cls, options: Mapping[str, Any]) -> "RunConfig":
        """
        Build a config from a mapping of option names.

        Accepts both the field names (``chunk_size``) and the camelCase
        option names (``chunkSize``). Values are not validated here; the
        orchestrator calls validate() at startup.

        Raises:
            ConfigurationError: On unknown or duplicated options
        """
        known = {f.name for f in fields(cls)}
        kwargs: dict[str, Any] = {}
        for key, value in options.items():
            name = _ALIASES.get(key, key)
            if name not in known:
                raise ConfigurationError(f"Unknown configuration option: {key!r}")
            if name in kwargs:
                raise ConfigurationError(f"Configuration option given twice: {name!r}")
            kwargs[name] = value
        return cls(**kwargs)

    @property
    def max_in_flight(self) -> int:
        """Upper bound on fetched-but-uncommitted chunks."""
        return self.queue_capacity + self.worker_count

    def backoff_delay(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (1-based)."""
        delay = self.backoff_initial_s * (self.backoff_factor ** max(0, attempt - 1))
        return min(delay, self.backoff_max_s)

    def validate(self) -> None:
        """
        Check all options, failing fast on the first problem.

        Raises:
            ConfigurationError: If any option is out of range
        """
        for name in ("chunk_size", "worker_count", "queue_capacity", "max_retries"):
            if not _is_int(getattr(self, name)):
                raise ConfigurationError(
                    f"{name} must be an integer, got {getattr(self, name)!r}"
                )

        if self.chunk_size <= 0:
            raise ConfigurationError(f"chunk_size must be > 0, got {self.chunk_size}")
        if self.worker_count < 1:
            raise ConfigurationError(f"worker_count must be >= 1, got {self.worker_count}")
        if self.queue_capacity < self.worker_count:
            raise ConfigurationError(
                f"queue_capacity ({self.queue_capacity}) must be >= "
                f"worker_count ({self.worker_count})"
            )
        if self.max_retries < 0:
            raise ConfigurationError(f"max_retries must be >= 0, got {self.max_retries}")

        for name in ("backoff_initial_s", "backoff_max_s", "poll_interval_s"):
            value = getattr(self, name)
            if not _is_number(value) or value < 0:
                raise ConfigurationError(f"{name} must be a number >= 0, got {value!r}")
        if self.poll_interval_s == 0:
            raise ConfigurationError("poll_interval_s must be > 0")
        if not _is_number(self.backoff_factor) or self.backoff_factor < 1:
            raise ConfigurationError(
                f"backoff_factor must be a number >= 1, got {self.backoff_factor!r}"
            )

        if self.mode not in ("resume", "restart"):
            raise ConfigurationError(
                f"Invalid mode: {self.mode!r}. Must be 'resume' or 'restart'"
            )
        if self.stop_offset is not None and (
            not _is_int(self.stop_offset) or self.stop_offset < 0
        ):
            raise ConfigurationError(
                f"stop_offset must be a non-negative integer, got {self.stop_offset!r}"
            )

        if not isinstance(self.run_name, str) or not self.run_name.strip():
            raise ConfigurationError(f"run_name must be a non-empty string, got {self.run_name!r}")
        if os.sep in self.run_name or (os.altsep and os.altsep in self.run_name):
            raise ConfigurationError(f"run_name must not contain a path separator: {self.run_name!r}")
        if self.log_dir is not None and not isinstance(self.log_dir, (str, os.PathLike)):
            raise ConfigurationError(f"log_dir must be a path, got {self.log_dir!r}")
