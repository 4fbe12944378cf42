"""Server-side tile persistence with per-canvas quota.

Tile metadata lives in the `drawing_tile` table, tile bytes in the blob
store under {canvas_id}/{z}/{x}/{y}.webp. The canvas row carries a
denormalized tile_count that never exceeds MAX_TILES_PER_CANVAS.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from domain.errors import (
    NotFoundError,
    QuotaExceededError,
    StorageError,
    ValidationError,
)
from domain.models import SaveTilesResult, TileCoordinate, TileInfo
from domain.validation import (
    validate_id,
    validate_tile_coordinate,
    validate_tile_range,
    validate_zoom,
)
from shared.constants import MAX_TILES_PER_CANVAS
from storage.blobs import tile_key
from storage.database import from_db_time, to_db_time, utc_now

if TYPE_CHECKING:
    import sqlite3
    from collections.abc import Callable, Sequence
    from datetime import datetime

    from domain.models import TileUpload
    from storage.blobs import BlobStore
    from storage.database import Database

logger = logging.getLogger(__name__)


def tile_row_id(canvas_id: str, z: int, x: int, y: int) -> str:
    return f'{canvas_id}/{z}/{x}/{y}'


def _row_to_info(row: sqlite3.Row) -> TileInfo:
    return TileInfo(
        z=row['z'], x=row['x'], y=row['y'], updated_at=from_db_time(row['updated_at'])
    )


class TileStore:
    """Tile metadata + blob persistence.

    Usage:
        store = TileStore(db, blobs)
        result = store.save_tiles(canvas_id, [TileUpload(z=17, x=1, y=2, data=b'...')])
        data = store.get_tile_image(canvas_id, 17, 1, 2)
    """

    def __init__(
        self,
        db: Database,
        blobs: BlobStore,
        max_tiles: int = MAX_TILES_PER_CANVAS,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.db = db
        self.blobs = blobs
        self.max_tiles = max_tiles
        self._clock = clock

    def _require_canvas(self, conn: sqlite3.Connection, canvas_id: str) -> sqlite3.Row:
        row = conn.execute(
            'SELECT id, tile_count FROM canvas WHERE id = ?', (canvas_id,)
        ).fetchone()
        if row is None:
            msg = f'Canvas not found: {canvas_id}'
            raise NotFoundError(msg)
        return row

    def _validate_uploads(self, tiles: Sequence[TileUpload]) -> None:
        if not tiles:
            raise ValidationError('No tiles to save')
        for tile in tiles:
            validate_tile_coordinate(tile.z, tile.x, tile.y)
            if not tile.data:
                msg = f'Empty image data for tile {tile.z}/{tile.x}/{tile.y}'
                raise ValidationError(msg)
            if tile.layer_id is not None:
                validate_id(tile.layer_id, kind='layer')

    def save_tiles(self, canvas_id: str, tiles: Sequence[TileUpload]) -> SaveTilesResult:
        """
        Upsert a batch of tiles for a canvas.

        The whole batch is checked against the quota before anything is
        written: a new tile is admitted only while
        current_count + new_so_far < max_tiles. Repeated coordinates in one
        batch count once and are reported once; the last occurrence wins.

        Returns:
            SaveTilesResult with the saved coordinates and the new tile_count.

        Raises:
            ValidationError: Bad coordinates, ids or empty data.
            NotFoundError: Unknown canvas or layer.
            QuotaExceededError: The batch would push tile_count past max_tiles.
            StorageError: Blob write failed; metadata is rolled back.
        """
        validate_id(canvas_id)
        self._validate_uploads(tiles)

        with self.db.transaction() as conn:
            current = self._require_canvas(conn, canvas_id)['tile_count']

            layer_ids = {t.layer_id for t in tiles if t.layer_id is not None}
            for layer_id in layer_ids:
                found = conn.execute(
                    'SELECT 1 FROM layer WHERE id = ? AND canvas_id = ?',
                    (layer_id, canvas_id),
                ).fetchone()
                if found is None:
                    msg = f'Layer not found: {layer_id}'
                    raise NotFoundError(msg)

            # Quota check over the whole batch, before any side effect
            seen: set[tuple[int, int, int]] = set()
            existing: set[tuple[int, int, int]] = set()
            new_count = 0
            for tile in tiles:
                key = (tile.z, tile.x, tile.y)
                if key in seen:
                    continue
                seen.add(key)
                found = conn.execute(
                    'SELECT 1 FROM drawing_tile WHERE canvas_id = ? AND z = ? AND x = ? AND y = ?',
                    (canvas_id, *key),
                ).fetchone()
                if found is not None:
                    existing.add(key)
                    continue
                if current + new_count >= self.max_tiles:
                    logger.warning(
                        'Tile quota exceeded for canvas %s: %d existing, %d new in batch',
                        canvas_id,
                        current,
                        new_count,
                    )
                    raise QuotaExceededError(canvas_id, current + new_count, self.max_tiles)
                new_count += 1

            now = to_db_time(self._clock())
            saved: list[TileCoordinate] = []
            written: set[tuple[int, int, int]] = set()
            for tile in tiles:
                storage_key = tile_key(canvas_id, tile.z, tile.x, tile.y)
                self.blobs.put(storage_key, tile.data)
                key = (tile.z, tile.x, tile.y)
                if key in existing:
                    conn.execute(
                        '''UPDATE drawing_tile
                           SET updated_at = ?, layer_id = COALESCE(?, layer_id)
                           WHERE canvas_id = ? AND z = ? AND x = ? AND y = ?''',
                        (now, tile.layer_id, canvas_id, *key),
                    )
                else:
                    conn.execute(
                        '''INSERT INTO drawing_tile
                               (id, canvas_id, layer_id, z, x, y, storage_key,
                                created_at, updated_at)
                           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)''',
                        (
                            tile_row_id(canvas_id, *key),
                            canvas_id,
                            tile.layer_id,
                            *key,
                            storage_key,
                            now,
                            now,
                        ),
                    )
                    existing.add(key)
                if key not in written:
                    written.add(key)
                    saved.append(TileCoordinate(z=tile.z, x=tile.x, y=tile.y))

            conn.execute(
                'UPDATE canvas SET tile_count = tile_count + ?, updated_at = ? WHERE id = ?',
                (new_count, now, canvas_id),
            )

        logger.info(
            'Saved %d tiles for canvas %s (%d new, total %d)',
            len(saved),
            canvas_id,
            new_count,
            current + new_count,
        )
        return SaveTilesResult(saved=saved, new_count=current + new_count)

    def get_tiles_in_area(
        self,
        canvas_id: str,
        z: int,
        min_x: int,
        max_x: int,
        min_y: int,
        max_y: int,
        layer_id: str | None = None,
    ) -> list[TileInfo]:
        """Tiles of one zoom inside an inclusive x/y range, optionally one layer only."""
        validate_id(canvas_id)
        validate_zoom(z)
        validate_tile_range(min_x, max_x, min_y, max_y)

        sql = '''SELECT z, x, y, updated_at FROM drawing_tile
                 WHERE canvas_id = ? AND z = ? AND x BETWEEN ? AND ? AND y BETWEEN ? AND ?'''
        params: list = [canvas_id, z, min_x, max_x, min_y, max_y]
        if layer_id is not None:
            validate_id(layer_id, kind='layer')
            sql += ' AND layer_id = ?'
            params.append(layer_id)
        sql += ' ORDER BY y, x'

        with self.db.transaction() as conn:
            self._require_canvas(conn, canvas_id)
            rows = conn.execute(sql, params).fetchall()
        return [_row_to_info(r) for r in rows]

    def get_tile_coordinates(self, canvas_id: str) -> list[TileInfo]:
        """All tiles of a canvas with updated_at, for client cache versioning."""
        validate_id(canvas_id)
        rows = self.db.query_all(
            'SELECT z, x, y, updated_at FROM drawing_tile WHERE canvas_id = ? ORDER BY z, y, x',
            (canvas_id,),
        )
        return [_row_to_info(r) for r in rows]

    def get_tile_image(self, canvas_id: str, z: int, x: int, y: int) -> bytes | None:
        validate_id(canvas_id)
        validate_tile_coordinate(z, x, y)
        return self.blobs.get(tile_key(canvas_id, z, x, y))

    def tile_exists(self, canvas_id: str, z: int, x: int, y: int) -> bool:
        validate_id(canvas_id)
        validate_tile_coordinate(z, x, y)
        row = self.db.query_one(
            'SELECT 1 FROM drawing_tile WHERE canvas_id = ? AND z = ? AND x = ? AND y = ?',
            (canvas_id, z, x, y),
        )
        return row is not None

    def delete_tile(self, canvas_id: str, z: int, x: int, y: int) -> bool:
        """
        Delete a tile's metadata row and blob.

        Returns:
            False if the canvas has no such tile.
        """
        validate_id(canvas_id)
        validate_tile_coordinate(z, x, y)
        with self.db.transaction() as conn:
            self._require_canvas(conn, canvas_id)
            row = conn.execute(
                '''SELECT storage_key FROM drawing_tile
                   WHERE canvas_id = ? AND z = ? AND x = ? AND y = ?''',
                (canvas_id, z, x, y),
            ).fetchone()
            if row is None:
                return False
            conn.execute(
                'DELETE FROM drawing_tile WHERE canvas_id = ? AND z = ? AND x = ? AND y = ?',
                (canvas_id, z, x, y),
            )
            conn.execute(
                '''UPDATE canvas SET tile_count = MAX(tile_count - 1, 0), updated_at = ?
                   WHERE id = ?''',
                (to_db_time(self._clock()), canvas_id),
            )
            self.blobs.delete(row['storage_key'])
        logger.info('Deleted tile %s', tile_row_id(canvas_id, z, x, y))
        return True

    def detach_layer_tiles(self, canvas_id: str, layer_id: str) -> list[str]:
        """
        Delete the tile rows attributed to a layer and decrement tile_count.

        Joins the caller's transaction when there is one. The blobs are not
        touched: pass the returned storage keys to delete_blobs once the
        transaction has committed, so no row is left pointing at a deleted blob.

        Returns:
            Storage keys of the removed tiles.
        """
        with self.db.transaction() as conn:
            rows = conn.execute(
                'SELECT storage_key FROM drawing_tile WHERE canvas_id = ? AND layer_id = ?',
                (canvas_id, layer_id),
            ).fetchall()
            if not rows:
                return []
            conn.execute(
                'DELETE FROM drawing_tile WHERE canvas_id = ? AND layer_id = ?',
                (canvas_id, layer_id),
            )
            conn.execute(
                '''UPDATE canvas SET tile_count = MAX(tile_count - ?, 0), updated_at = ?
                   WHERE id = ?''',
                (len(rows), to_db_time(self._clock()), canvas_id),
            )
        return [row['storage_key'] for row in rows]

    def delete_blobs(self, keys: Sequence[str]) -> int:
        """Delete blobs whose rows are already gone. Failures are logged and skipped."""
        deleted = 0
        for key in keys:
            try:
                self.blobs.delete(key)
            except StorageError:
                logger.warning('Failed to delete tile blob %s', key, exc_info=True)
            else:
                deleted += 1
        return deleted
