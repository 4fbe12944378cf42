"""Input validation shared by the store, services and HTTP layer.

Every check raises domain ValidationError before any side effect happens.
"""

from __future__ import annotations

import secrets

from domain.errors import ValidationError
from shared.constants import (
    CANVAS_ID_LENGTH,
    CANVAS_ID_MIN_LENGTH,
    ID_ALPHABET,
    MAX_LAYER_NAME_LENGTH,
    MAX_ZOOM,
    MIN_ZOOM,
)


def generate_id(length: int = CANVAS_ID_LENGTH) -> str:
    """Random url-safe token used for canvas and layer ids."""
    return ''.join(secrets.choice(ID_ALPHABET) for _ in range(length))


def validate_id(value: str, kind: str = 'canvas') -> str:
    if not isinstance(value, str) or not (
        CANVAS_ID_MIN_LENGTH <= len(value) <= CANVAS_ID_LENGTH
    ):
        msg = f'Invalid {kind} id: {value!r}'
        raise ValidationError(msg)
    if any(ch not in ID_ALPHABET for ch in value):
        msg = f'Invalid characters in {kind} id: {value!r}'
        raise ValidationError(msg)
    return value


def validate_zoom(z: int) -> int:
    if isinstance(z, bool) or not isinstance(z, int) or not (MIN_ZOOM <= z <= MAX_ZOOM):
        msg = f'Zoom must be an integer in [{MIN_ZOOM}, {MAX_ZOOM}], got {z!r}'
        raise ValidationError(msg)
    return z


def validate_tile_coordinate(z: int, x: int, y: int) -> tuple[int, int, int]:
    """Check z in [1, 19] and x, y in [0, 2**z - 1]."""
    validate_zoom(z)
    limit = 2**z
    for name, value in (('x', x), ('y', y)):
        if isinstance(value, bool) or not isinstance(value, int) or not (0 <= value < limit):
            msg = f'Tile {name} must be in [0, {limit - 1}] at zoom {z}, got {value!r}'
            raise ValidationError(msg)
    return z, x, y


def validate_lat_lng(lat: float, lng: float) -> tuple[float, float]:
    if not (-90.0 <= lat <= 90.0):
        msg = f'Latitude out of range: {lat}'
        raise ValidationError(msg)
    if not (-180.0 <= lng <= 180.0):
        msg = f'Longitude out of range: {lng}'
        raise ValidationError(msg)
    return lat, lng


def validate_layer_name(name: str) -> str:
    name = name.strip() if isinstance(name, str) else ''
    if not name:
        raise ValidationError('Layer name must not be empty')
    if len(name) > MAX_LAYER_NAME_LENGTH:
        msg = f'Layer name longer than {MAX_LAYER_NAME_LENGTH} characters'
        raise ValidationError(msg)
    return name


def validate_tile_range(min_x: int, max_x: int, min_y: int, max_y: int) -> None:
    if min_x < 0 or min_y < 0 or max_x < min_x or max_y < min_y:
        msg = f'Invalid tile range x=[{min_x}, {max_x}] y=[{min_y}, {max_y}]'
        raise ValidationError(msg)
