"""Interfaces for the collaborators supplied by the caller."""

from __future__ import annotations

import logging
from typing import Any, Optional, Protocol, Sequence, runtime_checkable

logger = logging.getLogger(__name__)

__all__ = [
    "DatasetAdapter",
    "ResultSink",
    "ProgressStore",
    "open_resource",
    "close_resource",
]


@runtime_checkable
class DatasetAdapter(Protocol):
    """
    Offset-addressable source of rows.

    fetch() must be safe to call again with the same arguments and returns
    an empty sequence (or None) once ``offset`` is at or past the end of the
    dataset. Temporary unavailability is signalled with TransientError.
    """

    def fetch(self, offset: int, size: int) -> Optional[Sequence[Any]]:
        ...


@runtime_checkable
class ResultSink(Protocol):
    """
    Destination for transformed chunk outputs.

    write() may be called more than once for the same offset (a retried
    chunk) and must leave only the latest outputs visible.
    """

    def write(self, offset: int, outputs: Sequence[Any]) -> None:
        ...


@runtime_checkable
class ProgressStore(Protocol):
    """Durable home of the committed offset."""

    def load(self) -> int:
        ...

    def save(self, offset: int) -> None:
        ...


def open_resource(resource: Any) -> None:
    """Call resource.open() if the adapter defines it."""
    opener = getattr(resource, "open", None)
    if callable(opener):
        opener()


def close_resource(resource: Any) -> None:
    """Call resource.close() if the adapter defines it; errors are logged."""
    closer = getattr(resource, "close", None)
    if not callable(closer):
        return
    try:
        closer()
    except Exception as exc:
        logger.warning("Error closing %s: %s", type(resource).__name__, exc)
