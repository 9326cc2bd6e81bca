"""Collaborator interfaces and reference adapters."""

from .base import DatasetAdapter, ResultSink, ProgressStore, open_resource, close_resource
from .sources import SequenceSource, MemmapSource, SQLiteQuerySource
from .sinks import MemorySink, RocksDictSink
from .stores import MemoryProgressStore, JsonFileProgressStore, SQLiteProgressStore

__all__ = [
    # Interfaces
    "DatasetAdapter",
    "ResultSink",
    "ProgressStore",
    "open_resource",
    "close_resource",

    # Sources
    "SequenceSource",
    "MemmapSource",
    "SQLiteQuerySource",

    # Sinks
    "MemorySink",
    "RocksDictSink",

    # Progress stores
    "MemoryProgressStore",
    "JsonFileProgressStore",
    "SQLiteProgressStore",
]
