"""Dirty-region extraction from a drawing surface into pyramid tiles.

The drawing surface is an RGBA raster centred on a geographic origin at a
given "surface zoom". Tiles are cut at a target zoom that may differ from
the surface zoom; offsets are computed in world pixels at the surface zoom
so both zooms line up exactly.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np
from PIL import Image

from geo.mercator import project_to_pixel, tile_center, tile_range
from shared.constants import TILE_SIZE

if TYPE_CHECKING:
    from collections.abc import Iterable

    from geo.mercator import TileBounds

logger = logging.getLogger(__name__)


@dataclass
class ExtractedTile:
    """Non-empty tile cut from a surface, already resampled to TILE_SIZE."""

    z: int
    x: int
    y: int
    image: Image.Image

    @property
    def label(self) -> str:
        return f'{self.z}/{self.x}/{self.y}'


@dataclass(frozen=True)
class SourceRect:
    """Square region of the surface (surface pixels, may reach outside it)."""

    left: float
    top: float
    size: float

    @property
    def box(self) -> tuple[float, float, float, float]:
        return self.left, self.top, self.left + self.size, self.top + self.size

    def overlap(self, width: int, height: int) -> tuple[int, int, int, int] | None:
        """Integer pixel box of the part inside a width x height surface."""
        x0 = max(0, math.floor(self.left))
        y0 = max(0, math.floor(self.top))
        x1 = min(width, math.ceil(self.left + self.size))
        y1 = min(height, math.ceil(self.top + self.size))
        if x1 <= x0 or y1 <= y0:
            return None
        return x0, y0, x1, y1


def alpha_array(image: Image.Image) -> np.ndarray:
    """Alpha channel as a uint8 array (fully opaque for modes without alpha)."""
    if image.mode == 'RGBA':
        return np.asarray(image.getchannel('A'))
    if image.mode in ('LA', 'PA'):
        return np.asarray(image.convert('RGBA').getchannel('A'))
    return np.full((image.height, image.width), 255, dtype=np.uint8)


def has_content(image: Image.Image) -> bool:
    """True if at least one pixel has non-zero alpha."""
    return bool(alpha_array(image).any())


def tile_source_rect(
    surface_size: tuple[int, int],
    origin: tuple[float, float],
    surface_zoom: int,
    target_zoom: int,
    x: int,
    y: int,
    tile_size: int = TILE_SIZE,
) -> SourceRect:
    """
    Source rectangle of target-zoom tile (x, y) on the surface.

    Both the surface origin and the tile centre are projected at the
    surface zoom, so the offset is exact even when the zooms differ.
    """
    width, height = surface_size
    scale = 2.0 ** (target_zoom - surface_zoom)
    origin_px = project_to_pixel(origin[0], origin[1], surface_zoom)
    center_lat, center_lng = tile_center(x, y, target_zoom)
    center_px = project_to_pixel(center_lat, center_lng, surface_zoom)

    src_size = tile_size / scale
    left = width / 2.0 + (center_px[0] - origin_px[0]) - src_size / 2.0
    top = height / 2.0 + (center_px[1] - origin_px[1]) - src_size / 2.0
    return SourceRect(left=left, top=top, size=src_size)


class DirtyTileExtractor:
    """
    Cuts the minimal set of non-empty target-zoom tiles out of a surface.

    A tile is produced only if it overlaps the viewport, its source rectangle
    overlaps the surface and its resampled image has a pixel with non-zero
    alpha.
    """

    def __init__(
        self,
        tile_size: int = TILE_SIZE,
        resample: Image.Resampling = Image.Resampling.BILINEAR,
    ) -> None:
        self.tile_size = tile_size
        self.resample = resample

    def extract(
        self,
        surface: Image.Image,
        origin: tuple[float, float],
        surface_zoom: int,
        target_zoom: int,
        viewport: TileBounds,
    ) -> list[ExtractedTile]:
        """
        Extract non-empty tiles overlapping viewport.

        Args:
            surface: RGBA drawing surface.
            origin: (lat, lng) of the surface centre.
            surface_zoom: Zoom at which one surface pixel is one world pixel.
            target_zoom: Zoom of the produced tiles.
            viewport: Geographic bounds limiting the candidate tiles.

        Returns:
            Tiles resampled to tile_size x tile_size, row-major order.
        """
        img = surface if surface.mode == 'RGBA' else surface.convert('RGBA')
        alpha = alpha_array(img)
        candidates = tile_range(viewport, target_zoom)

        tiles: list[ExtractedTile] = []
        skipped_outside = 0
        skipped_empty = 0
        for x, y in candidates.tiles():
            rect = tile_source_rect(
                img.size, origin, surface_zoom, target_zoom, x, y, self.tile_size
            )
            overlap = rect.overlap(img.width, img.height)
            if overlap is None:
                skipped_outside += 1
                continue
            x0, y0, x1, y1 = overlap
            if not alpha[y0:y1, x0:x1].any():
                skipped_empty += 1
                continue
            image = self._resample(img, rect)
            # Downsampling can drop edge pixels the overlap box still covers
            if not has_content(image):
                skipped_empty += 1
                continue
            tiles.append(ExtractedTile(z=target_zoom, x=x, y=y, image=image))

        logger.debug(
            'Extracted %d tiles at z%d (%d candidates, %d outside, %d empty)',
            len(tiles),
            target_zoom,
            candidates.tile_count(),
            skipped_outside,
            skipped_empty,
        )
        return tiles

    def _resample(self, surface: Image.Image, rect: SourceRect) -> Image.Image:
        # EXTENT fills the part outside the surface with transparent pixels
        return surface.transform(
            (self.tile_size, self.tile_size),
            Image.Transform.EXTENT,
            rect.box,
            resample=self.resample,
        )


def render_tiles_onto_surface(
    surface: Image.Image,
    origin: tuple[float, float],
    surface_zoom: int,
    tiles: Iterable[tuple[int, int, int, Image.Image]],
    tile_size: int = TILE_SIZE,
) -> int:
    """
    Paint saved tiles (z, x, y, image) back onto a surface.

    Inverse of extraction, used to redraw persisted content.

    Returns:
        Number of tiles that landed on the surface.
    """
    drawn = 0
    for z, x, y, image in tiles:
        rect = tile_source_rect(
            surface.size, origin, surface_zoom, z, x, y, tile_size
        )
        if rect.overlap(surface.width, surface.height) is None:
            continue
        dest_size = max(1, round(rect.size))
        tile_img = image if image.mode == 'RGBA' else image.convert('RGBA')
        if tile_img.size != (dest_size, dest_size):
            tile_img = tile_img.resize((dest_size, dest_size), Image.Resampling.BILINEAR)
        dx = round(rect.left)
        dy = round(rect.top)
        surface.alpha_composite(
            tile_img,
            dest=(max(dx, 0), max(dy, 0)),
            source=(max(-dx, 0), max(-dy, 0)),
        )
        drawn += 1
    return drawn
