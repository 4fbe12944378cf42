"""Canvas and layer metadata services."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from domain.errors import LayerLimitError, NotFoundError, ValidationError
from domain.models import Canvas, Layer
from domain.validation import generate_id, validate_id, validate_layer_name
from shared.constants import DEFAULT_LAYER_NAME, MAX_LAYERS_PER_CANVAS
from storage.blobs import ogp_key
from storage.database import to_db_time, utc_now

if TYPE_CHECKING:
    import sqlite3
    from collections.abc import Callable
    from datetime import datetime

    from domain.models import CanvasCreate, CanvasUpdate, LayerUpdate
    from services.tile_store import TileStore
    from storage.blobs import BlobStore
    from storage.database import Database

logger = logging.getLogger(__name__)

SHARE_FIELDS = ('share_lat', 'share_lng', 'share_zoom')

LAYER_COLUMNS = 'id, canvas_id, name, "order", visible, created_at, updated_at'


def _insert_layer(
    conn: sqlite3.Connection, canvas_id: str, name: str, order: int, now: str
) -> Layer:
    layer_id = generate_id()
    conn.execute(
        f'INSERT INTO layer ({LAYER_COLUMNS}) VALUES (?, ?, ?, ?, 1, ?, ?)',
        (layer_id, canvas_id, name, order, now, now),
    )
    return Layer(
        id=layer_id,
        canvas_id=canvas_id,
        name=name,
        order=order,
        visible=True,
        created_at=now,
        updated_at=now,
    )


class CanvasService:
    """Create, read and update canvases.

    A new canvas always starts with one default layer and tile_count 0.
    """

    def __init__(
        self,
        db: Database,
        blobs: BlobStore,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.db = db
        self.blobs = blobs
        self._clock = clock

    def create(self, data: CanvasCreate) -> Canvas:
        canvas_id = generate_id()
        now = to_db_time(self._clock())
        with self.db.transaction() as conn:
            conn.execute(
                '''INSERT INTO canvas (id, center_lat, center_lng, zoom, tile_count,
                                       created_at, updated_at)
                   VALUES (?, ?, ?, ?, 0, ?, ?)''',
                (canvas_id, data.center_lat, data.center_lng, data.zoom, now, now),
            )
            _insert_layer(conn, canvas_id, DEFAULT_LAYER_NAME, 0, now)
        logger.info('Created canvas %s at (%.5f, %.5f) z%d',
                    canvas_id, data.center_lat, data.center_lng, data.zoom)
        return self.get(canvas_id)

    def find(self, canvas_id: str) -> Canvas | None:
        validate_id(canvas_id)
        row = self.db.query_one('SELECT * FROM canvas WHERE id = ?', (canvas_id,))
        return None if row is None else Canvas.model_validate(dict(row))

    def get(self, canvas_id: str) -> Canvas:
        canvas = self.find(canvas_id)
        if canvas is None:
            msg = f'Canvas not found: {canvas_id}'
            raise NotFoundError(msg)
        return canvas

    def update(self, canvas_id: str, data: CanvasUpdate) -> Canvas:
        """
        Apply the explicitly set fields of data.

        Raises:
            ValidationError: The resulting share triple is partially set.
            NotFoundError: Unknown canvas.
        """
        current = self.get(canvas_id)
        changes = {k: getattr(data, k) for k in data.model_fields_set}
        for key in ('center_lat', 'center_lng', 'zoom'):
            if key in changes and changes[key] is None:
                del changes[key]

        merged = current.model_dump()
        merged.update(changes)
        share = [merged[k] for k in SHARE_FIELDS]
        if any(v is None for v in share) and not all(v is None for v in share):
            raise ValidationError('share_lat, share_lng and share_zoom must be set together')
        if not changes:
            return current

        now = to_db_time(self._clock())
        assignments = ', '.join(f'{k} = ?' for k in changes)
        with self.db.transaction() as conn:
            conn.execute(
                f'UPDATE canvas SET {assignments}, updated_at = ? WHERE id = ?',
                (*changes.values(), now, canvas_id),
            )
        logger.info('Updated canvas %s: %s', canvas_id, ', '.join(sorted(changes)))
        return self.get(canvas_id)

    def set_ogp_image(self, canvas_id: str, image: bytes, place_name: str | None = None) -> Canvas:
        """Store a pre-rendered preview image for a canvas and record its key."""
        self.get(canvas_id)
        if place_name is not None and len(place_name) > 100:
            raise ValidationError('Place name longer than 100 characters')
        key = ogp_key(canvas_id)
        self.blobs.put(key, image)
        now = to_db_time(self._clock())
        with self.db.transaction() as conn:
            conn.execute(
                '''UPDATE canvas SET ogp_image_key = ?, ogp_place_name = ?,
                                     ogp_generated_at = ?, updated_at = ?
                   WHERE id = ?''',
                (key, place_name, now, now, canvas_id),
            )
        return self.get(canvas_id)


class LayerService:
    """Ordered layers of a canvas (1 to MAX_LAYERS_PER_CANVAS)."""

    def __init__(
        self,
        db: Database,
        tiles: TileStore,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.db = db
        self.tiles = tiles
        self._clock = clock

    def _require_canvas(self, conn: sqlite3.Connection, canvas_id: str) -> None:
        if conn.execute('SELECT 1 FROM canvas WHERE id = ?', (canvas_id,)).fetchone() is None:
            msg = f'Canvas not found: {canvas_id}'
            raise NotFoundError(msg)

    def _require_layer(self, conn: sqlite3.Connection, canvas_id: str, layer_id: str) -> Layer:
        row = conn.execute(
            f'SELECT {LAYER_COLUMNS} FROM layer WHERE id = ? AND canvas_id = ?',
            (layer_id, canvas_id),
        ).fetchone()
        if row is None:
            msg = f'Layer not found: {layer_id}'
            raise NotFoundError(msg)
        return Layer.model_validate(dict(row))

    def list(self, canvas_id: str) -> list[Layer]:
        validate_id(canvas_id)
        with self.db.transaction() as conn:
            self._require_canvas(conn, canvas_id)
            rows = conn.execute(
                f'SELECT {LAYER_COLUMNS} FROM layer WHERE canvas_id = ? ORDER BY "order"',
                (canvas_id,),
            ).fetchall()
        return [Layer.model_validate(dict(r)) for r in rows]

    def create(self, canvas_id: str, name: str | None = None) -> Layer:
        validate_id(canvas_id)
        if name is not None:
            name = validate_layer_name(name)
        with self.db.transaction() as conn:
            self._require_canvas(conn, canvas_id)
            count, max_order = conn.execute(
                'SELECT COUNT(*), MAX("order") FROM layer WHERE canvas_id = ?', (canvas_id,)
            ).fetchone()
            if count >= MAX_LAYERS_PER_CANVAS:
                msg = f'Canvas {canvas_id} already has {MAX_LAYERS_PER_CANVAS} layers'
                raise LayerLimitError(msg)
            order = 0 if max_order is None else max_order + 1
            now = to_db_time(self._clock())
            layer = _insert_layer(conn, canvas_id, name or f'Layer {order + 1}', order, now)
        logger.info('Created layer %s on canvas %s', layer.id, canvas_id)
        return layer

    def update(self, canvas_id: str, layer_id: str, data: LayerUpdate) -> Layer:
        validate_id(canvas_id)
        validate_id(layer_id, kind='layer')
        name = validate_layer_name(data.name) if data.name is not None else None
        with self.db.transaction() as conn:
            layer = self._require_layer(conn, canvas_id, layer_id)
            now = to_db_time(self._clock())
            if data.order is not None and data.order != layer.order:
                self._reorder(conn, canvas_id, layer, data.order)
            conn.execute(
                'UPDATE layer SET name = ?, visible = ?, updated_at = ? WHERE id = ?',
                (
                    name if name is not None else layer.name,
                    int(data.visible if data.visible is not None else layer.visible),
                    now,
                    layer_id,
                ),
            )
            return self._require_layer(conn, canvas_id, layer_id)

    def _reorder(
        self, conn: sqlite3.Connection, canvas_id: str, layer: Layer, new_order: int
    ) -> None:
        count = conn.execute(
            'SELECT COUNT(*) FROM layer WHERE canvas_id = ?', (canvas_id,)
        ).fetchone()[0]
        if not (0 <= new_order < count):
            msg = f'Layer order must be in [0, {count - 1}], got {new_order}'
            raise ValidationError(msg)

        old_order = layer.order
        if new_order < old_order:
            lo, hi, delta = new_order, old_order - 1, 1
        else:
            lo, hi, delta = old_order + 1, new_order, -1

        # UNIQUE(canvas_id, order) is checked per row, so park the moving
        # rows at negative orders before shifting them into place
        conn.execute('UPDATE layer SET "order" = -1 WHERE id = ?', (layer.id,))
        conn.execute(
            '''UPDATE layer SET "order" = -("order" + 2)
               WHERE canvas_id = ? AND "order" BETWEEN ? AND ?''',
            (canvas_id, lo, hi),
        )
        conn.execute(
            'UPDATE layer SET "order" = -"order" - 2 + ? WHERE canvas_id = ? AND "order" <= -2',
            (delta, canvas_id),
        )
        conn.execute('UPDATE layer SET "order" = ? WHERE id = ?', (new_order, layer.id))

    def delete(self, canvas_id: str, layer_id: str) -> int:
        """
        Delete a layer together with its tiles and close the order gap.

        Returns:
            Number of tiles removed with the layer.

        Raises:
            LayerLimitError: The layer is the last one of the canvas.
        """
        validate_id(canvas_id)
        validate_id(layer_id, kind='layer')
        with self.db.transaction() as conn:
            layer = self._require_layer(conn, canvas_id, layer_id)
            count = conn.execute(
                'SELECT COUNT(*) FROM layer WHERE canvas_id = ?', (canvas_id,)
            ).fetchone()[0]
            if count <= 1:
                raise LayerLimitError('Cannot delete the last layer of a canvas')

            keys = self.tiles.detach_layer_tiles(canvas_id, layer_id)
            conn.execute('DELETE FROM layer WHERE id = ?', (layer_id,))
            rows = conn.execute(
                'SELECT id FROM layer WHERE canvas_id = ? AND "order" > ? ORDER BY "order"',
                (canvas_id, layer.order),
            ).fetchall()
            # Ascending one by one keeps UNIQUE(canvas_id, order) satisfied
            for row in rows:
                conn.execute(
                    'UPDATE layer SET "order" = "order" - 1 WHERE id = ?', (row['id'],)
                )
        # Blobs go only after the row deletes are committed
        self.tiles.delete_blobs(keys)
        removed = len(keys)
        logger.info('Deleted layer %s of canvas %s (%d tiles)', layer_id, canvas_id, removed)
        return removed
