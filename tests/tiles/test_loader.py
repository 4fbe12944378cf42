"""Tests for TileLoader."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime

import pytest
from PIL import Image

from domain.models import TileInfo
from geo.mercator import TileBounds, tile_bounds
from imaging.encoder import encode_webp
from tiles.cache import TileCache
from tiles.loader import TileLoader

CANVAS_ID = 'k' * 21
V1 = datetime(2026, 1, 1, tzinfo=UTC)
V2 = datetime(2026, 1, 2, tzinfo=UTC)


def _blob() -> bytes:
    img = Image.new('RGBA', (256, 256), (0, 0, 0, 0))
    img.putpixel((1, 1), (255, 0, 0, 255))
    return encode_webp(img, 0.85)


class FakeApi:
    """Serves a fixed tile listing and counts image downloads."""

    def __init__(self, infos, missing=()):
        self.infos = infos
        self.missing = set(missing)
        self.downloads = []
        self.in_flight = 0
        self.peak = 0
        self.blob = _blob()

    async def get_tiles_in_area(self, canvas_id, z, min_x, max_x, min_y, max_y, layer_id=None):
        self.area = (z, min_x, max_x, min_y, max_y, layer_id)
        return self.infos

    async def get_tile_image(self, canvas_id, z, x, y, version=None):
        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)
        await asyncio.sleep(0.01)
        self.in_flight -= 1
        self.downloads.append(((z, x, y), version))
        if (z, x, y) in self.missing:
            return None
        return self.blob


def _viewport():
    b1 = tile_bounds(10, 10, 17)
    b2 = tile_bounds(12, 11, 17)
    eps = 1e-7
    return TileBounds(
        south=b2.south + eps, west=b1.west + eps, north=b1.north - eps, east=b2.east - eps
    )


class TestTileLoader:
    """Tests for TileLoader.load_viewport."""

    @pytest.mark.asyncio
    async def test_downloads_and_caches(self):
        """Unknown tiles are downloaded, decoded and cached."""
        infos = [
            TileInfo(z=17, x=10, y=10, updated_at=V1),
            TileInfo(z=17, x=11, y=10, updated_at=V1),
        ]
        api = FakeApi(infos)
        cache = TileCache()
        loader = TileLoader(api, cache)

        tiles = await loader.load_viewport(CANVAS_ID, 17, _viewport())

        assert [(t.x, t.y) for t in tiles] == [(10, 10), (11, 10)]
        assert tiles[0].image.mode == 'RGBA'
        assert cache.size() == 2
        assert loader.downloads == 2
        assert api.area[:5] == (17, 10, 12, 10, 11)
        assert {v for _, v in api.downloads} == {V1}

    @pytest.mark.asyncio
    async def test_fresh_cache_hit_skips_download(self):
        """Tiles cached with the same version are not fetched again."""
        infos = [TileInfo(z=17, x=10, y=10, updated_at=V1)]
        api = FakeApi(infos)
        cache = TileCache()
        cache.set(CANVAS_ID, 17, 10, 10, Image.new('RGBA', (256, 256)), updated_at=V1)

        tiles = await TileLoader(api, cache).load_viewport(CANVAS_ID, 17, _viewport())

        assert len(tiles) == 1
        assert api.downloads == []

    @pytest.mark.asyncio
    async def test_stale_cache_entry_refetched(self):
        """A newer server version replaces the cached bitmap."""
        infos = [TileInfo(z=17, x=10, y=10, updated_at=V2)]
        api = FakeApi(infos)
        cache = TileCache()
        cache.set(CANVAS_ID, 17, 10, 10, Image.new('RGBA', (256, 256)), updated_at=V1)

        await TileLoader(api, cache).load_viewport(CANVAS_ID, 17, _viewport())

        assert len(api.downloads) == 1
        assert cache.get(CANVAS_ID, 17, 10, 10).updated_at == V2

    @pytest.mark.asyncio
    async def test_vanished_tiles_skipped(self):
        """A tile deleted between listing and download is left out."""
        infos = [TileInfo(z=17, x=10, y=10), TileInfo(z=17, x=11, y=10)]
        api = FakeApi(infos, missing=[(17, 10, 10)])

        tiles = await TileLoader(api, TileCache()).load_viewport(CANVAS_ID, 17, _viewport())

        assert [(t.x, t.y) for t in tiles] == [(11, 10)]

    @pytest.mark.asyncio
    async def test_concurrency_bounded(self):
        """No more than `concurrency` downloads run at once."""
        infos = [TileInfo(z=17, x=x, y=10) for x in range(10, 13)] + [
            TileInfo(z=17, x=x, y=11) for x in range(10, 13)
        ]
        api = FakeApi(infos)

        await TileLoader(api, TileCache(), concurrency=2).load_viewport(
            CANVAS_ID, 17, _viewport()
        )

        assert api.peak <= 2
        assert len(api.downloads) == 6
