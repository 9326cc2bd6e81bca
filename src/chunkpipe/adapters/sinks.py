"""Reference result sinks. Writes for one offset overwrite earlier ones."""

from __future__ import annotations

import logging
import struct
import threading
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple, Union

from rocksdict import Options, Rdict

logger = logging.getLogger(__name__)

__all__ = ["MemorySink", "RocksDictSink", "encode_offset_key", "decode_offset_key"]

PathLike = Union[str, Path]


class MemorySink:
    """Keeps chunk outputs in a dict keyed by offset."""

    def __init__(self):
        self._lock = threading.Lock()
        self.results: Dict[int, List[Any]] = {}
        self.writes: List[Tuple[int, int]] = []  # (offset, number of outputs) per call

    def write(self, offset: int, outputs: Sequence[Any]) -> None:
        with self._lock:
            self.results[offset] = list(outputs)
            self.writes.append((offset, len(outputs)))

    def rows(self) -> List[Any]:
        """All outputs in offset order."""
        with self._lock:
            return [row for offset in sorted(self.results) for row in self.results[offset]]

    def __repr__(self) -> str:
        return f"MemorySink(chunks={len(self.results)})"


def encode_offset_key(offset: int) -> bytes:
    """Big-endian uint64 so that byte order matches offset order."""
    return struct.pack(">Q", offset)


def decode_offset_key(key: bytes) -> int:
    return struct.unpack(">Q", key)[0]


class RocksDictSink:
    """
    Stores each chunk's outputs as one RocksDB entry.

    The key is the big-endian chunk offset and the value is the list of
    outputs (pickled by rocksdict), so rewriting an offset replaces it.

    Args:
        path: RocksDB directory (created if missing)
        sync: Sync the write-ahead log on every write
    """

    def __init__(self, path: PathLike, *, sync: bool = False):
        self.path = Path(path)
        self.sync = sync
        self._db: Optional[Rdict] = None
        self._lock = threading.Lock()

    def open(self) -> None:
        if self._db is None:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            options = Options()
            options.create_if_missing(True)
            self._db = Rdict(str(self.path), options)
            logger.info("Opened result database %s", self.path)

    def close(self) -> None:
        db, self._db = self._db, None
        if db is not None:
            try:
                db.flush()
            finally:
                db.close()

    def write(self, offset: int, outputs: Sequence[Any]) -> None:
        if self._db is None:
            self.open()
        with self._lock:
            self._db[encode_offset_key(offset)] = list(outputs)
            if self.sync:
                self._db.flush_wal(True)

    def get(self, offset: int) -> Optional[List[Any]]:
        if self._db is None:
            self.open()
        return self._db.get(encode_offset_key(offset))

    def items(self) -> Iterator[Tuple[int, List[Any]]]:
        """Yield (offset, outputs) in offset order."""
        if self._db is None:
            self.open()
        for key, value in self._db.items():
            yield decode_offset_key(key), value

    def __repr__(self) -> str:
        return f"RocksDictSink({str(self.path)!r})"
