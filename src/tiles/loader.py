"""Read-through loading of saved drawing tiles into the tile cache."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from geo.mercator import tile_range
from imaging.encoder import decode_tile
from shared.constants import DOWNLOAD_CONCURRENCY

if TYPE_CHECKING:
    from collections.abc import Callable

    from PIL import Image

    from domain.models import TileInfo
    from geo.mercator import TileBounds
    from infrastructure.http.client import DrawingApiClient
    from tiles.cache import CachedTile, TileCache

logger = logging.getLogger(__name__)


class TileLoader:
    """
    Loads the saved tiles of a viewport.

    Tiles already cached with the same updated_at are served from memory;
    the rest are downloaded concurrently (bounded by a semaphore), decoded
    and cached.
    """

    def __init__(
        self,
        api: DrawingApiClient,
        cache: TileCache,
        *,
        concurrency: int = DOWNLOAD_CONCURRENCY,
        decode: Callable[[bytes], Image.Image] = decode_tile,
    ) -> None:
        self.api = api
        self.cache = cache
        self._sem = asyncio.Semaphore(concurrency)
        self._decode = decode
        self.downloads = 0

    def _fresh(self, canvas_id: str, info: TileInfo) -> CachedTile | None:
        cached = self.cache.get(canvas_id, info.z, info.x, info.y)
        if cached is None:
            return None
        if info.updated_at is not None and cached.updated_at != info.updated_at:
            return None
        return cached

    async def _download(self, canvas_id: str, info: TileInfo) -> CachedTile | None:
        async with self._sem:
            data = await self.api.get_tile_image(
                canvas_id, info.z, info.x, info.y, version=info.updated_at
            )
        if data is None:
            logger.debug('Tile %d/%d/%d listed but missing', info.z, info.x, info.y)
            return None
        self.downloads += 1
        image = self._decode(data)
        return self.cache.set(
            canvas_id, info.z, info.x, info.y, image, updated_at=info.updated_at
        )

    async def load_viewport(
        self,
        canvas_id: str,
        zoom: int,
        viewport: TileBounds,
        layer_id: str | None = None,
    ) -> list[CachedTile]:
        """
        Return every saved tile of the viewport at zoom.

        Returns:
            Cached tiles in the server's listing order; tiles that vanished
            between listing and download are skipped.
        """
        rng = tile_range(viewport, zoom)
        infos = await self.api.get_tiles_in_area(
            canvas_id, zoom, rng.min_x, rng.max_x, rng.min_y, rng.max_y, layer_id
        )

        out: dict[tuple[int, int, int], CachedTile] = {}
        missing: list[TileInfo] = []
        for info in infos:
            cached = self._fresh(canvas_id, info)
            if cached is not None:
                out[info.key()] = cached
            else:
                missing.append(info)

        async def _worker(info: TileInfo) -> None:
            tile = await self._download(canvas_id, info)
            if tile is not None:
                out[info.key()] = tile

        await asyncio.gather(*(_worker(i) for i in missing))
        logger.info(
            'Loaded %d tiles for canvas %s z%d (%d from cache, %d downloaded)',
            len(out),
            canvas_id,
            zoom,
            len(infos) - len(missing),
            len(out) - (len(infos) - len(missing)),
        )
        return [out[i.key()] for i in infos if i.key() in out]

