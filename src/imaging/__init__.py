"""Image processing for drawing tiles.

This module provides:
- DirtyTileExtractor: cuts non-empty pyramid tiles out of a drawing surface
- TileEncoder: size-bounded WebP encoding
- StrokeHistory / render_stroke: pen strokes with undo/redo
"""

from imaging.encoder import (
    EncodedTile,
    TileEncoder,
    build_save_kwargs,
    decode_tile,
    normalize_tile,
)
from imaging.extract import (
    DirtyTileExtractor,
    ExtractedTile,
    has_content,
    render_tiles_onto_surface,
    tile_source_rect,
)
from imaging.strokes import StrokeHistory, render_stroke

__all__ = [
    'DirtyTileExtractor',
    'EncodedTile',
    'ExtractedTile',
    'StrokeHistory',
    'TileEncoder',
    'build_save_kwargs',
    'decode_tile',
    'has_content',
    'normalize_tile',
    'render_stroke',
    'render_tiles_onto_surface',
    'tile_source_rect',
]
