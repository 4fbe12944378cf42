"""Web Mercator tile pyramid math.

Pure functions converting between geographic coordinates (WGS84 lat/lng),
tile indices and world pixels of the standard 256 px XYZ tile pyramid.
Callers validate zoom and coordinates; nothing here raises.
"""

from __future__ import annotations

import math
from typing import NamedTuple

from shared.constants import (
    TILE_SIZE,
    WORLD_LAT_MAX_DEG,
    WORLD_LNG_HALF_SPAN_DEG,
    WORLD_LNG_SPAN_DEG,
)


class TileBounds(NamedTuple):
    """Geographic bounds of a tile or viewport (degrees)."""

    south: float
    west: float
    north: float
    east: float


class TileRange(NamedTuple):
    """Inclusive range of tile indices at one zoom level."""

    min_x: int
    max_x: int
    min_y: int
    max_y: int

    def tiles(self):
        """Yield (x, y) pairs row by row, north to south."""
        for y in range(self.min_y, self.max_y + 1):
            for x in range(self.min_x, self.max_x + 1):
                yield x, y

    def tile_count(self) -> int:
        return (self.max_x - self.min_x + 1) * (self.max_y - self.min_y + 1)


def _clamp_lat(lat_deg: float) -> float:
    return max(-WORLD_LAT_MAX_DEG, min(WORLD_LAT_MAX_DEG, lat_deg))


def _mercator_y(lat_deg: float) -> float:
    """Normalized Mercator Y in [0, 1], 0 at the north edge."""
    lat_rad = math.radians(_clamp_lat(lat_deg))
    return (1.0 - math.log(math.tan(lat_rad) + 1.0 / math.cos(lat_rad)) / math.pi) / 2.0


def _mercator_x(lng_deg: float) -> float:
    return (lng_deg + WORLD_LNG_HALF_SPAN_DEG) / WORLD_LNG_SPAN_DEG


def geo_to_tile(lat: float, lng: float, zoom: int) -> tuple[int, int]:
    """Tile containing (lat, lng) at zoom; indices clamped to [0, 2**zoom - 1]."""
    n = 2**zoom
    x = math.floor(_mercator_x(lng) * n)
    y = math.floor(_mercator_y(lat) * n)
    return min(max(x, 0), n - 1), min(max(y, 0), n - 1)


def tile_to_geo(x: float, y: float, zoom: int) -> tuple[float, float]:
    """North-west corner of tile (x, y) as (lat, lng)."""
    n = 2**zoom
    lng = x / n * WORLD_LNG_SPAN_DEG - WORLD_LNG_HALF_SPAN_DEG
    lat = math.degrees(math.atan(math.sinh(math.pi * (1.0 - 2.0 * y / n))))
    return lat, lng


def tile_bounds(x: int, y: int, zoom: int) -> TileBounds:
    """Geographic bounds of tile (x, y) as (south, west, north, east)."""
    north, west = tile_to_geo(x, y, zoom)
    south, east = tile_to_geo(x + 1, y + 1, zoom)
    return TileBounds(south=south, west=west, north=north, east=east)


def tile_center(x: int, y: int, zoom: int) -> tuple[float, float]:
    """Mid-point of the tile bounds as (lat, lng)."""
    b = tile_bounds(x, y, zoom)
    return (b.north + b.south) / 2.0, (b.west + b.east) / 2.0


def project_to_pixel(lat: float, lng: float, zoom: int) -> tuple[float, float]:
    """WGS84 (lat, lng) -> world pixels of the pyramid at zoom (2**zoom * 256 scale)."""
    world_size = TILE_SIZE * (2**zoom)
    return _mercator_x(lng) * world_size, _mercator_y(lat) * world_size


def pixel_to_geo(px: float, py: float, zoom: int) -> tuple[float, float]:
    """Inverse of project_to_pixel: world pixels -> (lat, lng)."""
    return tile_to_geo(px / TILE_SIZE, py / TILE_SIZE, zoom)


def tile_range(bounds: TileBounds, zoom: int) -> TileRange:
    """Tile indices covering a geographic viewport at zoom."""
    min_x, min_y = geo_to_tile(bounds.north, bounds.west, zoom)
    max_x, max_y = geo_to_tile(bounds.south, bounds.east, zoom)
    return TileRange(
        min_x=min(min_x, max_x),
        max_x=max(min_x, max_x),
        min_y=min(min_y, max_y),
        max_y=max(min_y, max_y),
    )


def surface_bounds(
    origin: tuple[float, float],
    zoom: int,
    width_px: int,
    height_px: int,
) -> TileBounds:
    """Geographic viewport of a raster surface centred on origin at zoom."""
    cx, cy = project_to_pixel(origin[0], origin[1], zoom)
    north, west = pixel_to_geo(cx - width_px / 2.0, cy - height_px / 2.0, zoom)
    south, east = pixel_to_geo(cx + width_px / 2.0, cy + height_px / 2.0, zoom)
    return TileBounds(south=south, west=west, north=north, east=east)
