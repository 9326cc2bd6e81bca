"""Reader, worker pool and orchestration for chunked batch runs."""

from .logger import run_log_handler, setup_logger
from .orchestrator import BatchOrchestrator, run_pipeline

__all__ = ["BatchOrchestrator", "run_pipeline", "setup_logger", "run_log_handler"]
