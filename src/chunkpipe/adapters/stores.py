"""Reference progress stores. save() returns only once the offset is durable."""

from __future__ import annotations

import json
import logging
import os
import random
import sqlite3
import tempfile
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Union

from ..errors import TransientError

logger = logging.getLogger(__name__)

__all__ = ["MemoryProgressStore", "JsonFileProgressStore", "SQLiteProgressStore"]

PathLike = Union[str, Path]


class MemoryProgressStore:
    """In-process store; keeps every saved offset in ``history``."""

    def __init__(self, offset: int = 0):
        self.offset = offset
        self.history: List[int] = []

    def load(self) -> int:
        return self.offset

    def save(self, offset: int) -> None:
        self.offset = offset
        self.history.append(offset)

    def __repr__(self) -> str:
        return f"MemoryProgressStore(offset={self.offset})"


class JsonFileProgressStore:
    """
    Committed offset in a small JSON document.

    Each save writes a temporary file in the same directory, fsyncs it and
    renames it over the previous document, so a crash leaves either the old
    or the new offset, never a torn file.
    """

    def __init__(self, path: PathLike):
        self.path = Path(path)

    def load(self) -> int:
        if not self.path.exists():
            return 0
        with open(self.path, "r", encoding="utf-8") as f:
            return int(json.load(f)["committed_offset"])

    def save(self, offset: int) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        doc = {
            "committed_offset": offset,
            "updated_at": datetime.now(timezone.utc).isoformat(),
        }
        fd, tmp = tempfile.mkstemp(dir=self.path.parent, prefix=f".{self.path.name}.")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(doc, f)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, self.path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise
        _fsync_dir(self.path.parent)

    def __repr__(self) -> str:
        return f"JsonFileProgressStore({str(self.path)!r})"


def _fsync_dir(path: Path) -> None:
    """Persist a rename; not supported on every platform."""
    try:
        fd = os.open(path, os.O_RDONLY)
    except OSError:
        return
    try:
        os.fsync(fd)
    except OSError:
        pass
    finally:
        os.close(fd)


class SQLiteProgressStore:
    """
    Committed offsets in a SQLite table, one row per job name.

    Several jobs can share one database file. Writes use
    ``PRAGMA synchronous=FULL`` and commit before save() returns. A locked
    database is retried briefly, then reported as TransientError.
    """

    def __init__(self, db_path: PathLike, job: str = "default", timeout: float = 10.0):
        self.db_path = Path(db_path)
        self.job = job
        self.timeout = timeout

    def open(self) -> None:
        """Create the progress table if it doesn't exist."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with sqlite3.connect(str(self.db_path), timeout=self.timeout) as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS progress (
                    job TEXT PRIMARY KEY,
                    committed_offset INTEGER NOT NULL,
                    updated_at REAL
                )
            """)
            conn.commit()

    def load(self) -> int:
        if not self.db_path.exists():
            return 0
        self.open()
        with sqlite3.connect(str(self.db_path), timeout=self.timeout) as conn:
            row = conn.execute(
                "SELECT committed_offset FROM progress WHERE job = ?", (self.job,)
            ).fetchone()
        return int(row[0]) if row else 0

    def save(self, offset: int, max_retries: int = 5) -> None:
        for attempt in range(max_retries):
            try:
                conn = sqlite3.connect(str(self.db_path), timeout=self.timeout)
                try:
                    conn.execute("PRAGMA synchronous=FULL")
                    with conn:
                        conn.execute(
                            """
                            INSERT INTO progress (job, committed_offset, updated_at)
                            VALUES (?, ?, ?)
                            ON CONFLICT(job) DO UPDATE SET
                                committed_offset = excluded.committed_offset,
                                updated_at = excluded.updated_at
                            """,
                            (self.job, offset, time.time()),
                        )
                finally:
                    conn.close()
                return
            except sqlite3.OperationalError as e:
                if "no such table" in str(e):
                    self.open()
                    continue
                if "locked" in str(e) and attempt < max_retries - 1:
                    # Exponential backoff with jitter
                    base_delay = 0.1 * (2 ** attempt)
                    time.sleep(base_delay + random.uniform(0, base_delay * 0.5))
                    continue
                if "locked" in str(e):
                    raise TransientError(f"Progress database locked: {e}") from e
                raise
        raise TransientError(f"Could not save offset {offset} after {max_retries} attempts")

    def __repr__(self) -> str:
        return f"SQLiteProgressStore({str(self.db_path)!r}, job={self.job!r})"
