"""Reference dataset adapters."""

from __future__ import annotations

import logging
import sqlite3
from pathlib import Path
from typing import Any, Optional, Sequence, Tuple, Union

import numpy as np

from ..errors import TransientError

logger = logging.getLogger(__name__)

__all__ = ["SequenceSource", "MemmapSource", "SQLiteQuerySource"]

PathLike = Union[str, Path]


class SequenceSource:
    """Serves slices of an in-memory sequence."""

    def __init__(self, rows: Sequence[Any]):
        self._rows = rows

    def fetch(self, offset: int, size: int) -> Sequence[Any]:
        return tuple(self._rows[offset:offset + size])

    def __len__(self) -> int:
        return len(self._rows)

    def __repr__(self) -> str:
        return f"SequenceSource(rows={len(self._rows):,})"


class MemmapSource:
    """
    Fixed-size records from a binary file, read through numpy.memmap.

    Each fetch copies its slice out of the mapping, so a chunk owns its
    memory and the mapping itself never has to be fully resident.

    Args:
        path: Binary file of back-to-back records
        dtype: Record dtype (a structured dtype for multi-field rows)
        offset_bytes: Header bytes to skip at the start of the file
    """

    def __init__(self, path: PathLike, dtype: Any = np.float64, offset_bytes: int = 0):
        self.path = Path(path)
        self.dtype = np.dtype(dtype)
        self.offset_bytes = offset_bytes
        self._mm: Optional[np.memmap] = None

    def open(self) -> None:
        if self._mm is not None:
            return
        payload = self.path.stat().st_size - self.offset_bytes
        if payload % self.dtype.itemsize:
            raise ValueError(
                f"{self.path} holds {payload} bytes after the header, not a "
                f"multiple of the {self.dtype.itemsize}-byte record size"
            )
        count = payload // self.dtype.itemsize
        if count == 0:
            # np.memmap refuses zero-length mappings
            self._mm = np.empty(0, dtype=self.dtype)  # type: ignore[assignment]
        else:
            self._mm = np.memmap(
                self.path, dtype=self.dtype, mode="r",
                offset=self.offset_bytes, shape=(count,),
            )
        logger.info("Mapped %s (%d records of %d bytes)", self.path, count, self.dtype.itemsize)

    def close(self) -> None:
        # The mapping is released once the last reference to it is dropped
        self._mm = None

    def fetch(self, offset: int, size: int) -> np.ndarray:
        if self._mm is None:
            self.open()
        rows = np.array(self._mm[offset:offset + size])
        rows.flags.writeable = False
        return rows

    def __len__(self) -> int:
        if self._mm is None:
            self.open()
        return len(self._mm)

    def __repr__(self) -> str:
        return f"MemmapSource({str(self.path)!r}, dtype={self.dtype})"


class SQLiteQuerySource:
    """
    Paginated reads of a SQL query over a SQLite database.

    The query must have a deterministic ORDER BY so that the same offset
    always yields the same rows. Pages are read with LIMIT/OFFSET.

    Args:
        db_path: Path to the SQLite database
        query: SELECT statement (without LIMIT/OFFSET)
        params: Query parameters
        timeout: Seconds to wait on a locked database before failing
    """

    def __init__(
        self,
        db_path: PathLike,
        query: str,
        params: Tuple[Any, ...] = (),
        timeout: float = 10.0,
    ):
        self.db_path = Path(db_path)
        self.query = query.strip().rstrip(";")
        self.params = tuple(params)
        self.timeout = timeout
        self._conn: Optional[sqlite3.Connection] = None

    def open(self) -> None:
        if self._conn is None:
            uri = f"file:{self.db_path}?mode=ro"
            self._conn = sqlite3.connect(
                uri, uri=True, timeout=self.timeout, check_same_thread=False
            )

    def close(self) -> None:
        conn, self._conn = self._conn, None
        if conn is not None:
            conn.close()

    def fetch(self, offset: int, size: int) -> list:
        if self._conn is None:
            self.open()
        try:
            cursor = self._conn.execute(
                f"{self.query} LIMIT ? OFFSET ?",
                self.params + (size, offset),
            )
            return cursor.fetchall()
        except sqlite3.OperationalError as e:
            if "locked" in str(e) or "busy" in str(e):
                raise TransientError(f"Database busy at offset {offset}: {e}") from e
            raise

    def __repr__(self) -> str:
        return f"SQLiteQuerySource({str(self.db_path)!r})"
