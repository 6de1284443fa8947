"""Ordered, persistent key-value store used by the index."""

from __future__ import annotations

import enum
import logging
import sqlite3
import struct
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Iterator

from .errors import ElectrsError

logger = logging.getLogger(__name__)

DB_VERSION = 1
_FILENAME = "store.sqlite"
_BATCH = 256


@dataclass(frozen=True)
class DBRow:
    key: bytes
    value: bytes


class DBFlush(enum.Enum):
    DISABLE = "disable"
    ENABLE = "enable"


def _compatibility_bytes(light_mode: bool) -> bytes:
    data = struct.pack("<I", DB_VERSION)
    if light_mode:
        # Appended rather than encoded so that databases without light mode
        # keep the same marker.
        data += b"\x01"
    return data


class DB:
    """Byte-ordered key-value store kept in a single directory."""

    def __init__(self, path: Path, connection: sqlite3.Connection) -> None:
        self.path = path
        self._conn = connection
        self._lock = threading.RLock()

    @classmethod
    def open(cls, path, light_mode: bool = False) -> "DB":
        path = Path(path)
        logger.debug("opening DB at %s", path)
        path.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(
            str(path / _FILENAME), isolation_level=None, check_same_thread=False
        )
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute(
            "CREATE TABLE IF NOT EXISTS kv "
            "(key BLOB PRIMARY KEY, value BLOB NOT NULL) WITHOUT ROWID"
        )
        db = cls(path, conn)
        try:
            db._verify_compatibility(light_mode)
        except BaseException:
            db.close()
            raise
        return db

    def __repr__(self) -> str:
        return f"DB({str(self.path)!r})"

    def __enter__(self) -> "DB":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def full_compaction(self) -> None:
        logger.debug("starting full compaction on %r", self)
        with self._lock:
            self._conn.execute("VACUUM")
        logger.debug("finished full compaction on %r", self)

    def enable_auto_compaction(self) -> None:
        with self._lock:
            if not self.auto_compaction:
                self._conn.execute("PRAGMA auto_vacuum=FULL")
                self._conn.execute("VACUUM")

    @property
    def auto_compaction(self) -> bool:
        with self._lock:
            (mode,) = self._conn.execute("PRAGMA auto_vacuum").fetchone()
        return mode == 1

    def _iterate(
        self, prefix: bytes, start: bytes, first_cmp: str, next_cmp: str, order: str
    ) -> Iterator[DBRow]:
        prefix = bytes(prefix)
        bound = bytes(start)
        cmp = first_cmp
        while True:
            with self._lock:
                rows = self._conn.execute(
                    f"SELECT key, value FROM kv WHERE key {cmp} ? "
                    f"ORDER BY key {order} LIMIT ?",
                    (bound, _BATCH),
                ).fetchall()
            for key, value in rows:
                key = bytes(key)
                if not key.startswith(prefix):
                    return
                yield DBRow(key, bytes(value))
            if len(rows) < _BATCH:
                return
            bound = bytes(rows[-1][0])
            cmp = next_cmp

    def iter_scan(self, prefix: bytes) -> Iterator[DBRow]:
        """Yield rows whose key starts with prefix, in ascending key order."""
        return self._iterate(prefix, prefix, ">=", ">", "ASC")

    def iter_scan_from(self, prefix: bytes, start_at: bytes) -> Iterator[DBRow]:
        """Yield rows from start_at onwards while their key has the prefix."""
        return self._iterate(prefix, start_at, ">=", ">", "ASC")

    def iter_scan_reverse(self, prefix: bytes, prefix_max: bytes) -> Iterator[DBRow]:
        """Yield rows at or below prefix_max, descending, while they have the prefix."""
        return self._iterate(prefix, prefix_max, "<=", "<", "DESC")

    def write(self, rows: Iterable[DBRow], flush: DBFlush = DBFlush.DISABLE) -> None:
        rows = sorted(rows, key=lambda row: row.key)
        logger.debug("writing %d rows to %r, flush=%s", len(rows), self, flush)
        sync = "FULL" if flush is DBFlush.ENABLE else "OFF"
        self._write_many(((bytes(r.key), bytes(r.value)) for r in rows), sync)

    def _write_many(self, pairs: Iterable[tuple[bytes, bytes]], sync: str) -> None:
        with self._lock:
            self._conn.execute(f"PRAGMA synchronous={sync}")
            try:
                self._conn.execute("BEGIN")
                try:
                    self._conn.executemany(
                        "INSERT OR REPLACE INTO kv (key, value) VALUES (?, ?)", pairs
                    )
                except BaseException:
                    self._conn.execute("ROLLBACK")
                    raise
                self._conn.execute("COMMIT")
            finally:
                self._conn.execute("PRAGMA synchronous=NORMAL")

    def flush(self) -> None:
        with self._lock:
            self._conn.execute("PRAGMA wal_checkpoint(FULL)")

    def put(self, key: bytes, value: bytes) -> None:
        self._write_many([(bytes(key), bytes(value))], "NORMAL")

    def put_sync(self, key: bytes, value: bytes) -> None:
        self._write_many([(bytes(key), bytes(value))], "FULL")

    def get(self, key: bytes) -> bytes | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT value FROM kv WHERE key = ?", (bytes(key),)
            ).fetchone()
        return None if row is None else bytes(row[0])

    def _verify_compatibility(self, light_mode: bool) -> None:
        expected = _compatibility_bytes(light_mode)
        found = self.get(b"V")
        if found is None:
            self.put(b"V", expected)
        elif found != expected:
            raise ElectrsError("Incompatible database found. Please reindex.")