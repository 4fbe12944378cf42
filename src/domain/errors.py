"""Typed failures of the tile storage pipeline.

Validation and not-found errors surface directly to the caller. Quota and
lock errors carry structured fields the caller branches on. Storage errors
are raised on interactive paths and collected (never raised) by cleanup.
"""

from __future__ import annotations


class SketchmapError(Exception):
    """Base class for all domain errors."""

    code = 'INTERNAL_ERROR'


class ValidationError(SketchmapError):
    """Malformed coordinates, zoom, id or layer name; rejected before side effects."""

    code = 'INVALID_DATA'


class NotFoundError(SketchmapError):
    """Referenced canvas, tile or layer does not exist."""

    code = 'NOT_FOUND'


class QuotaExceededError(SketchmapError):
    """A save batch would push a canvas past its tile quota."""

    code = 'LIMIT_EXCEEDED'

    def __init__(self, canvas_id: str, current_count: int, limit: int) -> None:
        self.canvas_id = canvas_id
        self.current_count = current_count
        self.limit = limit
        super().__init__(
            f'Tile limit exceeded for canvas {canvas_id} '
            f'({current_count}/{limit})'
        )


class LayerLimitError(SketchmapError):
    """Layer count would leave the 1..10 range."""

    code = 'LAYER_LIMIT'


class LockAcquisitionError(SketchmapError):
    """Another cleanup run holds a fresh advisory lock."""

    code = 'CLEANUP_LOCKED'

    def __init__(self, locked_by: str, locked_at: str) -> None:
        self.locked_by = locked_by
        self.locked_at = locked_at
        super().__init__(f'Cleanup already running (locked by {locked_by} at {locked_at})')


class StorageError(SketchmapError):
    """Blob store operation failed (transient)."""

    code = 'STORAGE_ERROR'


class TileTooLargeError(ValidationError):
    """Tile exceeds the size budget even at the quality floor (strict mode)."""

    code = 'TILE_TOO_LARGE'


class TileEncodingWarning(UserWarning):
    """Non-fatal: encoded tile is still over budget at the quality floor."""
