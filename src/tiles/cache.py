"""In-memory LRU cache of decoded drawing tiles.

This module provides TileCache, a bounded per-process cache keyed by
(canvas_id, z, x, y). It is constructed explicitly by its owner.
"""

from __future__ import annotations

import logging
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from shared.constants import TILE_CACHE_MAX_ENTRIES

if TYPE_CHECKING:
    from datetime import datetime

    from PIL import Image

logger = logging.getLogger(__name__)

CacheKey = tuple[str, int, int, int]


@dataclass
class CachedTile:
    """A tile bitmap held in memory."""

    canvas_id: str
    z: int
    x: int
    y: int
    image: Image.Image
    updated_at: datetime | None = None
    loaded_at: float = field(default_factory=time.monotonic)

    @property
    def key(self) -> CacheKey:
        return self.canvas_id, self.z, self.x, self.y


@dataclass
class CacheStats:
    """Statistics about the tile cache."""

    entries: int
    max_size: int
    hits: int
    misses: int
    evictions: int
    entries_by_canvas: dict[str, int]

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0


class TileCache:
    """Bounded tile cache with least-recently-loaded eviction.

    Features:
    - Inserting a new key at capacity evicts exactly the entry with the
      oldest loaded_at
    - Updating an existing key never evicts and refreshes loaded_at
    - clear(canvas_id) drops one canvas only

    Usage:
        cache = TileCache(max_size=150)
        cache.set('abc...', 17, 116418, 51622, image)
        tile = cache.get('abc...', 17, 116418, 51622)
    """

    def __init__(self, max_size: int = TILE_CACHE_MAX_ENTRIES) -> None:
        if max_size < 1:
            raise ValueError('max_size must be >= 1')
        self.max_size = max_size
        # Ordered by loaded_at, oldest first
        self._entries: OrderedDict[CacheKey, CachedTile] = OrderedDict()
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    def get(self, canvas_id: str, z: int, x: int, y: int) -> CachedTile | None:
        tile = self._entries.get((canvas_id, z, x, y))
        if tile is None:
            self._misses += 1
        else:
            self._hits += 1
        return tile

    def set(
        self,
        canvas_id: str,
        z: int,
        x: int,
        y: int,
        image: Image.Image,
        updated_at: datetime | None = None,
    ) -> CachedTile:
        key = (canvas_id, z, x, y)
        if key not in self._entries and len(self._entries) >= self.max_size:
            evicted_key, _ = self._entries.popitem(last=False)
            self._evictions += 1
            logger.debug('Evicted tile %s/%d/%d/%d', *evicted_key)

        tile = CachedTile(
            canvas_id=canvas_id, z=z, x=x, y=y, image=image, updated_at=updated_at
        )
        self._entries[key] = tile
        self._entries.move_to_end(key)
        return tile

    def clear(self, canvas_id: str | None = None) -> int:
        """Remove all entries, or only those of canvas_id. Returns count removed."""
        if canvas_id is None:
            removed = len(self._entries)
            self._entries.clear()
        else:
            keys = [k for k in self._entries if k[0] == canvas_id]
            for k in keys:
                del self._entries[k]
            removed = len(keys)
        logger.debug('Cleared %d cached tiles (canvas=%s)', removed, canvas_id)
        return removed

    def size(self) -> int:
        return len(self._entries)

    def get_all_for_canvas(self, canvas_id: str) -> list[CachedTile]:
        return [t for k, t in self._entries.items() if k[0] == canvas_id]

    def stats(self) -> CacheStats:
        by_canvas: dict[str, int] = {}
        for canvas_id, *_ in self._entries:
            by_canvas[canvas_id] = by_canvas.get(canvas_id, 0) + 1
        return CacheStats(
            entries=len(self._entries),
            max_size=self.max_size,
            hits=self._hits,
            misses=self._misses,
            evictions=self._evictions,
            entries_by_canvas=by_canvas,
        )
