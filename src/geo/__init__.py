"""Geo module - Web Mercator tile pyramid math."""

from .mercator import (
    TileBounds,
    TileRange,
    geo_to_tile,
    pixel_to_geo,
    project_to_pixel,
    surface_bounds,
    tile_bounds,
    tile_center,
    tile_range,
    tile_to_geo,
)

__all__ = [
    'TileBounds',
    'TileRange',
    'geo_to_tile',
    'pixel_to_geo',
    'project_to_pixel',
    'surface_bounds',
    'tile_bounds',
    'tile_center',
    'tile_range',
    'tile_to_geo',
]
