# chunkpipe/pipeline/retry.py
"""Retry with exponential backoff for transient adapter errors."""
from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Optional, TypeVar

from ..config import RunConfig
from ..errors import TransientError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def call_with_retries(
    fn: Callable[[], T],
    config: RunConfig,
    *,
    what: str,
    stop_event: Optional[threading.Event] = None,
    on_retry: Optional[Callable[[int, BaseException], None]] = None,
) -> T:
    """
    Call fn(), retrying on TransientError with exponential backoff.

    Makes at most ``config.max_retries + 1`` attempts. Other exceptions
    propagate immediately. Setting ``stop_event`` cuts the backoff short and
    re-raises the last transient error.
    """
    attempt = 0
    while True:
        try:
            return fn()
        except TransientError as exc:
            attempt += 1
            if attempt > config.max_retries:
                logger.error("%s failed after %d attempts: %s", what, attempt, exc)
                raise
            delay = config.backoff_delay(attempt)
            logger.warning("%s failed (%s); retrying in %.1fs...", what, exc, delay)
            if on_retry is not None:
                on_retry(attempt, exc)
            if stop_event is not None:
                if stop_event.wait(delay):
                    raise
            elif delay > 0:
                time.sleep(delay)
