# chunkpipe/pipeline/logger.py
"""Log file setup for chunkpipe runs."""
from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Iterator, Union

__all__ = ["LOG_FORMAT", "PACKAGE_LOGGER", "run_log_path", "setup_logger", "run_log_handler"]

LOG_FORMAT = "%(asctime)s %(levelname)s %(threadName)s %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Every module logs below this name
PACKAGE_LOGGER = "chunkpipe"


def run_log_path(log_dir: Union[str, Path], run_name: str) -> Path:
    """
    Return ``<log_dir>/<run_name>_<YYYYmmdd_HHMMSS>.log``, creating log_dir.

    A path with a suffix (e.g. the progress file of the run) is treated as
    a file and its parent directory is used instead.
    """
    p = Path(log_dir).expanduser()
    directory = p if (p.is_dir() or not p.suffix) else p.parent
    directory.mkdir(parents=True, exist_ok=True)
    ts = datetime.now().strftime("%Y%m%d_%H%M%S")
    return directory / f"{run_name}_{ts}.log"


def setup_logger(
    log_dir: Union[str, Path],
    *,
    run_name: str = "chunkpipe",
    level: int = logging.INFO,
    console: bool = False,
    rotate: bool = False,
    max_bytes: int = 10 * 1024 * 1024,
    backup_count: int = 3,
    force: bool = False,
) -> Path:
    """
    Configure root logging for an application that drives chunkpipe runs.

    Writes to a timestamped file named after ``run_name``. Call once at
    process start; pass force=True to replace (and close) existing root
    handlers. Returns the path to the log file.
    """
    log_path = run_log_path(log_dir, run_name)

    root = logging.getLogger()
    if force:
        for h in list(root.handlers):
            root.removeHandler(h)
            h.close()
    root.setLevel(level)

    fmt = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)
    if rotate:
        fhandler: logging.Handler = RotatingFileHandler(
            log_path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
        )
    else:
        fhandler = logging.FileHandler(log_path, mode="w", encoding="utf-8")
    fhandler.setLevel(level)
    fhandler.setFormatter(fmt)
    root.addHandler(fhandler)

    if console:
        shandler = logging.StreamHandler()
        shandler.setLevel(level)
        shandler.setFormatter(fmt)
        root.addHandler(shandler)

    root.info("Logging to: %s", str(log_path))
    return log_path


@contextmanager
def run_log_handler(
    log_dir: Union[str, Path],
    run_name: str,
    level: int = logging.INFO,
) -> Iterator[Path]:
    """
    Capture one run's package logs in their own file.

    Attaches a file handler to the ``chunkpipe`` logger for the duration of
    the block, so the run log holds reader, worker and orchestrator records
    and nothing from the host application. The handler is removed and
    closed on exit; root logging configuration is left untouched.

    Yields:
        Path to the run's log file
    """
    log_path = run_log_path(log_dir, run_name)
    handler = logging.FileHandler(log_path, mode="w", encoding="utf-8")
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))

    package_logger = logging.getLogger(PACKAGE_LOGGER)
    previous_level = package_logger.level
    if previous_level == logging.NOTSET or previous_level > level:
        package_logger.setLevel(level)
    package_logger.addHandler(handler)
    try:
        package_logger.info("Run log: %s", str(log_path))
        yield log_path
    finally:
        package_logger.removeHandler(handler)
        handler.close()
        package_logger.setLevel(previous_level)
