"""Size-bounded lossy encoding of drawing tiles.

TileEncoder turns a raw tile bitmap into a WebP blob that fits the per-tile
byte budget, lowering quality step by step down to a floor.
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass
from io import BytesIO

from PIL import Image

from domain.errors import TileEncodingWarning, TileTooLargeError
from shared.constants import (
    MAX_TILE_BYTES,
    TILE_FORMAT,
    TILE_QUALITY_FLOOR,
    TILE_QUALITY_INITIAL,
    TILE_QUALITY_STEP,
    TILE_SIZE,
    TILE_WEBP_METHOD,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EncodedTile:
    """Result of encoding one tile."""

    data: bytes
    quality: float
    oversized: bool = False

    @property
    def size(self) -> int:
        return len(self.data)


def normalize_tile(image: Image.Image, tile_size: int = TILE_SIZE) -> Image.Image:
    """
    Bring a bitmap to the canonical tile size in RGBA.

    Undersized edge tiles are padded with transparency from the top-left
    corner; any other size mismatch is resampled.
    """
    img = image if image.mode == 'RGBA' else image.convert('RGBA')
    w, h = img.size
    if (w, h) == (tile_size, tile_size):
        return img
    if w <= tile_size and h <= tile_size:
        padded = Image.new('RGBA', (tile_size, tile_size), (0, 0, 0, 0))
        padded.paste(img, (0, 0))
        return padded
    return img.resize((tile_size, tile_size), Image.Resampling.BILINEAR)


def build_save_kwargs(quality: float) -> dict:
    """Build PIL.Image.save kwargs for WebP from a 0.0-1.0 quality factor."""
    q = max(0, min(100, round(quality * 100)))
    return {
        'format': TILE_FORMAT,
        'quality': q,
        'method': TILE_WEBP_METHOD,
    }


def encode_webp(image: Image.Image, quality: float) -> bytes:
    buf = BytesIO()
    image.save(buf, **build_save_kwargs(quality))
    return buf.getvalue()


def decode_tile(data: bytes) -> Image.Image:
    """Decode a stored tile blob into an RGBA image."""
    with Image.open(BytesIO(data)) as img:
        img.load()
        return img.convert('RGBA')


class TileEncoder:
    """
    Encodes tiles under a hard byte budget.

    Usage:
        encoder = TileEncoder()
        encoded = encoder.encode(tile_image)
        if encoded.oversized:
            ...  # still usable, a warning has been issued
    """

    def __init__(
        self,
        max_bytes: int = MAX_TILE_BYTES,
        initial_quality: float = TILE_QUALITY_INITIAL,
        quality_step: float = TILE_QUALITY_STEP,
        quality_floor: float = TILE_QUALITY_FLOOR,
        *,
        reject_oversized: bool = False,
    ) -> None:
        if not (0.0 < quality_floor <= initial_quality <= 1.0):
            msg = 'Quality factors must satisfy 0 < floor <= initial <= 1'
            raise ValueError(msg)
        if quality_step <= 0:
            raise ValueError('quality_step must be positive')
        self.max_bytes = max_bytes
        self.initial_quality = initial_quality
        self.quality_step = quality_step
        self.quality_floor = quality_floor
        self.reject_oversized = reject_oversized

    def _next_quality(self, quality: float) -> float:
        # Rounded to avoid float drift (0.85 - 0.1 * 5 != 0.35 exactly)
        return max(self.quality_floor, round(quality - self.quality_step, 4))

    def encode(self, bitmap: Image.Image, label: str = '') -> EncodedTile:
        """
        Encode a bitmap, reducing quality until it fits max_bytes.

        Args:
            bitmap: Tile image, any mode; normalized to 256x256 RGBA.
            label: Tile identifier used in log messages (e.g. 'z/x/y').

        Returns:
            EncodedTile; oversized=True when the floor quality is still too big.

        Raises:
            TileTooLargeError: Over budget at the floor and reject_oversized is set.
        """
        tile = normalize_tile(bitmap)
        quality = self.initial_quality
        data = encode_webp(tile, quality)

        while len(data) > self.max_bytes and quality > self.quality_floor:
            quality = self._next_quality(quality)
            data = encode_webp(tile, quality)
            logger.debug(
                'Tile %s re-encoded at quality %.2f: %d bytes', label, quality, len(data)
            )

        if len(data) <= self.max_bytes:
            return EncodedTile(data=data, quality=quality)

        msg = (
            f'Tile {label or "?"} exceeds {self.max_bytes} bytes even at '
            f'quality {quality:.2f} ({len(data)} bytes)'
        )
        if self.reject_oversized:
            raise TileTooLargeError(msg)
        logger.warning(msg)
        warnings.warn(msg, TileEncodingWarning, stacklevel=2)
        return EncodedTile(data=data, quality=quality, oversized=True)
