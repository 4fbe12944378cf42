"""Tests for the client save pipeline, retry policy and debouncer."""

from __future__ import annotations

import asyncio

import pytest
from PIL import Image, ImageDraw

from domain.errors import QuotaExceededError, StorageError
from domain.models import SaveTilesResult, TileCoordinate
from geo.mercator import surface_bounds
from imaging.encoder import TileEncoder
from imaging.extract import ExtractedTile
from settings import AppConfig
from tiles.cache import TileCache
from tiles.pipeline import (
    RetryPolicy,
    SaveDebouncer,
    TileSavePipeline,
    build_pipeline,
    encode_stage,
    normalize_stage,
)

TOKYO = (35.6812, 139.7671)
CANVAS_ID = 'c' * 21


class FakeApi:
    """Records save_tiles calls; fails the first `failures` calls."""

    def __init__(self, failures: int = 0, error: Exception | None = None):
        self.failures = failures
        self.error = error or StorageError('HTTP 503')
        self.calls = []

    async def save_tiles(self, canvas_id, uploads):
        self.calls.append((canvas_id, list(uploads)))
        if len(self.calls) <= self.failures:
            raise self.error
        return SaveTilesResult(
            saved=[TileCoordinate(z=u.z, x=u.x, y=u.y) for u in uploads],
            new_count=len(uploads),
        )


async def _no_sleep(delay):
    _no_sleep.delays.append(delay)


_no_sleep.delays = []


@pytest.fixture(autouse=True)
def _reset_sleep():
    _no_sleep.delays.clear()


def _surface_with_dot(size: int = 1024) -> Image.Image:
    img = Image.new('RGBA', (size, size), (0, 0, 0, 0))
    c = size // 2
    ImageDraw.Draw(img).ellipse((c - 8, c - 8, c + 8, c + 8), fill=(0, 0, 0, 255))
    return img


class TestRetryPolicy:
    """Tests for RetryPolicy."""

    def test_delays_grow_exponentially(self):
        """Delay doubles with each attempt."""
        policy = RetryPolicy(max_attempts=4, backoff_s=0.5, factor=2.0)
        assert [policy.delay(i) for i in (1, 2, 3)] == [0.5, 1.0, 2.0]

    @pytest.mark.asyncio
    async def test_retries_transient_errors(self):
        """Storage errors are retried until success."""
        api = FakeApi(failures=2)
        result, attempts = await RetryPolicy(max_attempts=3).call(
            api.save_tiles, CANVAS_ID, [], sleep=_no_sleep
        )
        assert attempts == 3
        assert result.new_count == 0
        assert _no_sleep.delays == [0.5, 1.0]

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self):
        """The last transient error propagates."""
        api = FakeApi(failures=5)
        with pytest.raises(StorageError):
            await RetryPolicy(max_attempts=2).call(
                api.save_tiles, CANVAS_ID, [], sleep=_no_sleep
            )
        assert len(api.calls) == 2

    @pytest.mark.asyncio
    async def test_domain_errors_not_retried(self):
        """Quota errors fail immediately."""
        api = FakeApi(failures=5, error=QuotaExceededError(CANVAS_ID, 1000, 1000))
        with pytest.raises(QuotaExceededError):
            await RetryPolicy(max_attempts=3).call(
                api.save_tiles, CANVAS_ID, [], sleep=_no_sleep
            )
        assert len(api.calls) == 1
        assert _no_sleep.delays == []


class TestStages:
    """Tests for the normalize and encode stages."""

    def test_normalize_pads_edge_tiles(self):
        """Undersized tiles come out 256x256 RGBA."""
        tile = ExtractedTile(z=17, x=1, y=2, image=Image.new('RGB', (100, 100)))
        (out,) = normalize_stage([tile]).tiles
        assert out.image.size == (256, 256)
        assert out.image.mode == 'RGBA'

    def test_encode_builds_uploads(self):
        """Encoded uploads carry coordinates and the target layer."""
        img = Image.new('RGBA', (256, 256), (0, 0, 0, 0))
        img.putpixel((5, 5), (255, 0, 0, 255))
        result = encode_stage(TileEncoder(), [ExtractedTile(17, 3, 4, img)], layer_id='L1')
        (upload,) = result.uploads
        assert (upload.z, upload.x, upload.y, upload.layer_id) == (17, 3, 4, 'L1')
        assert result.total_bytes == len(upload.data)
        assert result.oversized == []


class TestTileSavePipeline:
    """Tests for TileSavePipeline.run."""

    @pytest.mark.asyncio
    async def test_run_uploads_and_caches(self):
        """Non-empty tiles are uploaded once and written to the cache."""
        api = FakeApi()
        cache = TileCache()
        pipeline = TileSavePipeline(api, cache=cache)
        viewport = surface_bounds(TOKYO, 18, 1024, 1024)

        result = await pipeline.run(CANVAS_ID, _surface_with_dot(), TOKYO, 18, 17, viewport)

        assert 1 <= result.extracted <= 4
        assert result.uploaded == result.extracted
        assert result.attempts == 1
        assert len(api.calls) == 1
        assert cache.size() == result.extracted

    @pytest.mark.asyncio
    async def test_empty_surface_skips_upload(self):
        """Nothing is uploaded for a blank surface."""
        api = FakeApi()
        pipeline = TileSavePipeline(api)
        blank = Image.new('RGBA', (512, 512), (0, 0, 0, 0))
        viewport = surface_bounds(TOKYO, 18, 512, 512)

        result = await pipeline.run(CANVAS_ID, blank, TOKYO, 18, 17, viewport)

        assert result.extracted == 0
        assert result.saved is None
        assert api.calls == []

    @pytest.mark.asyncio
    async def test_failed_upload_leaves_cache_untouched(self):
        """When every attempt fails nothing is cached."""
        api = FakeApi(failures=10)
        cache = TileCache()
        retry = RetryPolicy(max_attempts=2, backoff_s=0.0)
        pipeline = TileSavePipeline(api, cache=cache, retry=retry)
        viewport = surface_bounds(TOKYO, 18, 1024, 1024)

        with pytest.raises(StorageError):
            await pipeline.run(CANVAS_ID, _surface_with_dot(), TOKYO, 18, 17, viewport)
        assert cache.size() == 0

    def test_build_pipeline_from_config(self):
        """Config sections drive encoder, retry and debounce settings."""
        config = AppConfig.model_validate(
            {
                'encoder': {'max_bytes': 50_000, 'strict': True},
                'client': {'retry_attempts': 5, 'debounce_s': 0.2},
            }
        )
        pipeline, debouncer = build_pipeline(FakeApi(), config)
        assert pipeline.encoder.max_bytes == 50_000
        assert pipeline.encoder.reject_oversized
        assert pipeline.retry.max_attempts == 5
        assert debouncer.delay_s == 0.2


class TestSaveDebouncer:
    """Tests for SaveDebouncer."""

    @pytest.mark.asyncio
    async def test_coalesces_bursts(self):
        """Several schedules within the window run only the latest save."""
        ran = []
        debouncer = SaveDebouncer(delay_s=0.05)

        def make(n):
            async def save():
                ran.append(n)

            return save

        for n in range(5):
            debouncer.schedule(make(n))
        await asyncio.sleep(0.2)

        assert ran == [4]
        assert debouncer.saves_run == 1
        assert not debouncer.pending

    @pytest.mark.asyncio
    async def test_flush_runs_immediately(self):
        """flush() runs the pending save without waiting for the timer."""
        ran = []
        debouncer = SaveDebouncer(delay_s=10.0)

        async def save():
            ran.append(1)

        debouncer.schedule(save)
        await debouncer.flush()
        assert ran == [1]
        assert not debouncer.pending

    @pytest.mark.asyncio
    async def test_flush_propagates_errors(self):
        """A failing save surfaces from flush()."""
        debouncer = SaveDebouncer(delay_s=10.0)

        async def save():
            raise StorageError('down')

        debouncer.schedule(save)
        with pytest.raises(StorageError):
            await debouncer.flush()

    @pytest.mark.asyncio
    async def test_background_errors_recorded(self):
        """Errors of timer-driven saves are kept in last_error."""
        debouncer = SaveDebouncer(delay_s=0.01)

        async def save():
            raise StorageError('down')

        debouncer.schedule(save)
        await asyncio.sleep(0.1)
        assert isinstance(debouncer.last_error, StorageError)

    @pytest.mark.asyncio
    async def test_saves_never_overlap(self):
        """A save scheduled during another one waits for it."""
        active = 0
        peak = 0
        debouncer = SaveDebouncer(delay_s=0.01)

        async def slow_save():
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.05)
            active -= 1

        debouncer.schedule(slow_save)
        await asyncio.sleep(0.03)
        debouncer.schedule(slow_save)
        await asyncio.sleep(0.2)
        await debouncer.flush()

        assert peak == 1
        assert debouncer.saves_run == 2

    @pytest.mark.asyncio
    async def test_cancel_drops_pending(self):
        """cancel() forgets the pending save."""
        ran = []
        debouncer = SaveDebouncer(delay_s=0.01)

        async def save():
            ran.append(1)

        debouncer.schedule(save)
        debouncer.cancel()
        await asyncio.sleep(0.05)
        assert ran == []
