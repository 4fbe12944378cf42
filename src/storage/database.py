"""SQLite metadata store for canvases, layers, tiles and cleanup audit.

This module provides Database, a thin wrapper over a single sqlite3
connection with schema creation and serialized write transactions.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Iterator, Sequence

logger = logging.getLogger(__name__)

MEMORY_DB = ':memory:'

SCHEMA = '''
    CREATE TABLE IF NOT EXISTS canvas (
        id TEXT PRIMARY KEY,
        center_lat REAL NOT NULL CHECK (center_lat BETWEEN -90 AND 90),
        center_lng REAL NOT NULL CHECK (center_lng BETWEEN -180 AND 180),
        zoom INTEGER NOT NULL CHECK (zoom BETWEEN 1 AND 19),
        share_lat REAL,
        share_lng REAL,
        share_zoom INTEGER CHECK (share_zoom IS NULL OR share_zoom BETWEEN 1 AND 19),
        tile_count INTEGER NOT NULL DEFAULT 0 CHECK (tile_count BETWEEN 0 AND 1000),
        ogp_image_key TEXT,
        ogp_place_name TEXT CHECK (ogp_place_name IS NULL OR length(ogp_place_name) <= 100),
        ogp_generated_at TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        CHECK (
            (share_lat IS NULL AND share_lng IS NULL AND share_zoom IS NULL)
            OR (share_lat IS NOT NULL AND share_lng IS NOT NULL AND share_zoom IS NOT NULL)
        )
    );

    CREATE TABLE IF NOT EXISTS layer (
        id TEXT PRIMARY KEY,
        canvas_id TEXT NOT NULL REFERENCES canvas(id) ON DELETE CASCADE,
        name TEXT NOT NULL CHECK (length(name) BETWEEN 1 AND 50),
        "order" INTEGER NOT NULL,
        visible INTEGER NOT NULL DEFAULT 1,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        UNIQUE (canvas_id, "order")
    );

    CREATE TABLE IF NOT EXISTS drawing_tile (
        id TEXT PRIMARY KEY,
        canvas_id TEXT NOT NULL REFERENCES canvas(id) ON DELETE CASCADE,
        layer_id TEXT REFERENCES layer(id) ON DELETE CASCADE,
        z INTEGER NOT NULL CHECK (z BETWEEN 1 AND 19),
        x INTEGER NOT NULL CHECK (x >= 0),
        y INTEGER NOT NULL CHECK (y >= 0),
        storage_key TEXT NOT NULL UNIQUE,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        UNIQUE (canvas_id, z, x, y)
    );

    CREATE TABLE IF NOT EXISTS deletion_record (
        id TEXT PRIMARY KEY,
        executed_at TEXT NOT NULL,
        canvases_deleted INTEGER NOT NULL DEFAULT 0,
        tiles_deleted INTEGER NOT NULL DEFAULT 0,
        layers_deleted INTEGER NOT NULL DEFAULT 0,
        ogp_images_deleted INTEGER NOT NULL DEFAULT 0,
        total_tiles_before INTEGER NOT NULL DEFAULT 0,
        total_tiles_after INTEGER NOT NULL DEFAULT 0,
        storage_reclaimed_bytes INTEGER NOT NULL DEFAULT 0,
        orphaned_tiles_deleted INTEGER NOT NULL DEFAULT 0,
        orphaned_ogp_deleted INTEGER NOT NULL DEFAULT 0,
        errors_encountered TEXT,
        duration_ms INTEGER NOT NULL DEFAULT 0
    );

    CREATE TABLE IF NOT EXISTS cleanup_lock (
        id INTEGER PRIMARY KEY CHECK (id = 1),
        locked_at TEXT NOT NULL,
        locked_by TEXT NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_canvas_created_at ON canvas(created_at);
    CREATE INDEX IF NOT EXISTS idx_layer_canvas ON layer(canvas_id);
    CREATE INDEX IF NOT EXISTS idx_tile_canvas_z ON drawing_tile(canvas_id, z);
    CREATE INDEX IF NOT EXISTS idx_tile_layer ON drawing_tile(layer_id);
    CREATE INDEX IF NOT EXISTS idx_deletion_record_executed_at
        ON deletion_record(executed_at);
'''


def utc_now() -> datetime:
    return datetime.now(UTC)


def to_db_time(value: datetime) -> str:
    """Fixed-width UTC ISO timestamp; lexicographic order equals time order."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat(timespec='microseconds')


def from_db_time(value: str | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromisoformat(value)


class Database:
    """SQLite metadata database.

    Features:
    - Foreign keys enforced, WAL journal for file databases
    - transaction() takes the write lock up front (BEGIN IMMEDIATE) and is
      serialized across threads sharing this object
    - Nested transaction() calls join the outer transaction

    Usage:
        db = Database('data/sketchmap.db')
        with db.transaction() as conn:
            conn.execute('UPDATE canvas SET ...')
        db.close()
    """

    def __init__(self, path: str | Path = MEMORY_DB) -> None:
        self.path = str(path)
        if self.path != MEMORY_DB:
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._depth = 0
        self._conn = sqlite3.connect(
            self.path, check_same_thread=False, isolation_level=None, timeout=30.0
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.execute('PRAGMA foreign_keys=ON')
        if self.path != MEMORY_DB:
            self._conn.execute('PRAGMA journal_mode=WAL')
            self._conn.execute('PRAGMA synchronous=NORMAL')
        self.init_schema()
        logger.info('Database opened at %s', self.path)

    def init_schema(self) -> None:
        with self._lock:
            self._conn.executescript(SCHEMA)

    @property
    def connection(self) -> sqlite3.Connection:
        return self._conn

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Serialized write transaction; rolls back on any exception."""
        with self._lock:
            if self._depth:
                self._depth += 1
                try:
                    yield self._conn
                finally:
                    self._depth -= 1
                return

            self._conn.execute('BEGIN IMMEDIATE')
            self._depth = 1
            try:
                yield self._conn
            except BaseException:
                self._conn.execute('ROLLBACK')
                raise
            else:
                self._conn.execute('COMMIT')
            finally:
                self._depth = 0

    def execute(self, sql: str, params: Sequence[Any] = ()) -> sqlite3.Cursor:
        with self._lock:
            return self._conn.execute(sql, params)

    def query_one(self, sql: str, params: Sequence[Any] = ()) -> sqlite3.Row | None:
        with self._lock:
            return self._conn.execute(sql, params).fetchone()

    def query_all(self, sql: str, params: Sequence[Any] = ()) -> list[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(sql, params).fetchall()

    def scalar(self, sql: str, params: Sequence[Any] = ()) -> Any:
        row = self.query_one(sql, params)
        return None if row is None else row[0]

    @contextmanager
    def foreign_keys_disabled(self) -> Iterator[None]:
        """Temporarily turn off FK enforcement (maintenance and test fixtures)."""
        with self._lock:
            self._conn.execute('PRAGMA foreign_keys=OFF')
            try:
                yield
            finally:
                self._conn.execute('PRAGMA foreign_keys=ON')

    def close(self) -> None:
        with self._lock:
            self._conn.close()
        logger.info('Database closed: %s', self.path)

    def __enter__(self) -> Database:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
