"""Pen strokes on a drawing surface with undo/redo history."""

from __future__ import annotations

import logging
from collections import deque
from typing import TYPE_CHECKING

from PIL import Image, ImageColor, ImageDraw

from geo.mercator import project_to_pixel
from shared.constants import MAX_HISTORY_SIZE, StrokeMode

if TYPE_CHECKING:
    from collections.abc import Iterable

    from domain.models import StrokeData

logger = logging.getLogger(__name__)

TRANSPARENT = (0, 0, 0, 0)


def stroke_to_surface_points(
    stroke: StrokeData,
    origin: tuple[float, float],
    surface_size: tuple[int, int],
    surface_zoom: int,
) -> list[tuple[float, float]]:
    """Project stroke points to surface pixel coordinates."""
    ox, oy = project_to_pixel(origin[0], origin[1], surface_zoom)
    half_w = surface_size[0] / 2.0
    half_h = surface_size[1] / 2.0
    points = []
    for p in stroke.points:
        px, py = project_to_pixel(p.lat, p.lng, surface_zoom)
        points.append((half_w + px - ox, half_h + py - oy))
    return points


def render_stroke(
    surface: Image.Image,
    stroke: StrokeData,
    origin: tuple[float, float],
    surface_zoom: int,
) -> None:
    """
    Draw a stroke onto an RGBA surface in place.

    Draw mode paints a round-joined polyline in the stroke colour. Erase mode
    writes fully transparent pixels along the same path.
    """
    if not stroke.points:
        return
    points = stroke_to_surface_points(stroke, origin, surface.size, surface_zoom)
    # Line width is in pixels at the zoom the stroke was drawn at
    width = max(1, round(stroke.thickness * 2.0 ** (surface_zoom - stroke.zoom)))
    if stroke.mode == StrokeMode.ERASE:
        fill = TRANSPARENT
    else:
        fill = ImageColor.getcolor(stroke.color, 'RGBA')

    # Plain Draw (no blending) so erase replaces pixels instead of compositing
    draw = ImageDraw.Draw(surface)
    if len(points) > 1:
        draw.line(points, fill=fill, width=width, joint='curve')
    r = width / 2.0
    for x, y in (points[0], points[-1]):
        draw.ellipse((x - r, y - r, x + r, y + r), fill=fill)


class StrokeHistory:
    """
    Bounded undo/redo history of strokes.

    Pushing a stroke clears the redo stack. Once more than max_size strokes
    are recorded the oldest ones are forgotten and can no longer be undone.
    """

    def __init__(self, max_size: int = MAX_HISTORY_SIZE) -> None:
        self.max_size = max_size
        self._done: deque[StrokeData] = deque(maxlen=max_size)
        self._undone: list[StrokeData] = []

    def __len__(self) -> int:
        return len(self._done)

    @property
    def strokes(self) -> list[StrokeData]:
        return list(self._done)

    @property
    def can_undo(self) -> bool:
        return bool(self._done)

    @property
    def can_redo(self) -> bool:
        return bool(self._undone)

    def push(self, stroke: StrokeData) -> None:
        self._done.append(stroke)
        self._undone.clear()

    def undo(self) -> StrokeData | None:
        if not self._done:
            return None
        stroke = self._done.pop()
        self._undone.append(stroke)
        return stroke

    def redo(self) -> StrokeData | None:
        if not self._undone:
            return None
        stroke = self._undone.pop()
        self._done.append(stroke)
        return stroke

    def clear(self) -> None:
        self._done.clear()
        self._undone.clear()

    def redraw(
        self,
        surface: Image.Image,
        origin: tuple[float, float],
        surface_zoom: int,
        hidden_layers: Iterable[str] = (),
    ) -> int:
        """
        Clear the surface and replay strokes of visible layers.

        Returns:
            Number of strokes drawn.
        """
        hidden = set(hidden_layers)
        surface.paste(TRANSPARENT, (0, 0, surface.width, surface.height))
        drawn = 0
        for stroke in self._done:
            if stroke.layer_id is not None and stroke.layer_id in hidden:
                continue
            render_stroke(surface, stroke, origin, surface_zoom)
            drawn += 1
        logger.debug('Redrew %d of %d strokes', drawn, len(self._done))
        return drawn
