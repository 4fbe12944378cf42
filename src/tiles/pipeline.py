"""Client-side save pipeline: extract -> normalize -> encode -> upload.

Each stage is a plain function returning a result dataclass. The CPU-bound
stages run in a worker thread; upload goes through RetryPolicy. Saves are
coalesced by SaveDebouncer and never run concurrently.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import aiohttp

from domain.errors import StorageError
from domain.models import SaveTilesResult, TileUpload
from imaging.encoder import TileEncoder, normalize_tile
from imaging.extract import DirtyTileExtractor, ExtractedTile
from shared.constants import (
    HTTP_BACKOFF_FACTOR,
    HTTP_BACKOFF_INITIAL_S,
    HTTP_RETRIES_DEFAULT,
    SAVE_DEBOUNCE_S,
)

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Sequence

    from PIL import Image

    from geo.mercator import TileBounds
    from infrastructure.http.client import DrawingApiClient
    from settings import AppConfig
    from tiles.cache import TileCache

logger = logging.getLogger(__name__)

RETRYABLE_ERRORS: tuple[type[BaseException], ...] = (
    StorageError,
    aiohttp.ClientError,
    TimeoutError,
)


@dataclass
class ExtractResult:
    tiles: list[ExtractedTile]
    elapsed_s: float


@dataclass
class NormalizeResult:
    tiles: list[ExtractedTile]


@dataclass
class EncodeResult:
    uploads: list[TileUpload]
    oversized: list[str] = field(default_factory=list)
    total_bytes: int = 0


@dataclass
class UploadResult:
    result: SaveTilesResult | None
    attempts: int


@dataclass
class PipelineResult:
    """Outcome of one save."""

    extracted: int
    encoded_bytes: int
    oversized: list[str]
    saved: SaveTilesResult | None
    attempts: int
    elapsed_s: float

    @property
    def uploaded(self) -> int:
        return 0 if self.saved is None else len(self.saved.saved)


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff for transient failures only.

    Validation, not-found and quota errors are raised on the first attempt.
    """

    max_attempts: int = HTTP_RETRIES_DEFAULT
    backoff_s: float = HTTP_BACKOFF_INITIAL_S
    factor: float = HTTP_BACKOFF_FACTOR

    def delay(self, attempt: int) -> float:
        """Sleep before retry number attempt (1-based)."""
        return self.backoff_s * self.factor ** (attempt - 1)

    async def call(
        self,
        fn: Callable[..., Awaitable[Any]],
        *args: Any,
        label: str = '',
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> tuple[Any, int]:
        """
        Await fn(*args) with retries.

        Returns:
            (result, attempts used).
        """
        for attempt in range(1, self.max_attempts + 1):
            try:
                return await fn(*args), attempt
            except RETRYABLE_ERRORS as e:
                if attempt >= self.max_attempts:
                    logger.error('%s failed after %d attempts: %s', label or fn, attempt, e)
                    raise
                delay = self.delay(attempt)
                logger.warning(
                    '%s failed (attempt %d/%d), retrying in %.2fs: %s',
                    label or fn,
                    attempt,
                    self.max_attempts,
                    delay,
                    e,
                )
                await sleep(delay)
        msg = 'max_attempts must be >= 1'
        raise ValueError(msg)


def extract_stage(
    extractor: DirtyTileExtractor,
    surface: Image.Image,
    origin: tuple[float, float],
    surface_zoom: int,
    target_zoom: int,
    viewport: TileBounds,
) -> ExtractResult:
    started = time.perf_counter()
    tiles = extractor.extract(surface, origin, surface_zoom, target_zoom, viewport)
    return ExtractResult(tiles=tiles, elapsed_s=time.perf_counter() - started)


def normalize_stage(tiles: Sequence[ExtractedTile]) -> NormalizeResult:
    return NormalizeResult(
        tiles=[
            ExtractedTile(z=t.z, x=t.x, y=t.y, image=normalize_tile(t.image)) for t in tiles
        ]
    )


def encode_stage(
    encoder: TileEncoder,
    tiles: Sequence[ExtractedTile],
    layer_id: str | None = None,
) -> EncodeResult:
    result = EncodeResult(uploads=[])
    for tile in tiles:
        encoded = encoder.encode(tile.image, label=tile.label)
        if encoded.oversized:
            result.oversized.append(tile.label)
        result.total_bytes += encoded.size
        result.uploads.append(
            TileUpload(z=tile.z, x=tile.x, y=tile.y, data=encoded.data, layer_id=layer_id)
        )
    return result


async def upload_stage(
    api: DrawingApiClient,
    canvas_id: str,
    uploads: Sequence[TileUpload],
    retry: RetryPolicy,
) -> UploadResult:
    if not uploads:
        return UploadResult(result=None, attempts=0)
    result, attempts = await retry.call(
        api.save_tiles, canvas_id, list(uploads), label=f'save_tiles({canvas_id})'
    )
    return UploadResult(result=result, attempts=attempts)


class TileSavePipeline:
    """
    Persists the dirty part of a drawing surface.

    Usage:
        pipeline = TileSavePipeline(api, cache=cache)
        result = await pipeline.run(canvas_id, surface, origin, 18, 17, viewport)
    """

    def __init__(
        self,
        api: DrawingApiClient,
        extractor: DirtyTileExtractor | None = None,
        encoder: TileEncoder | None = None,
        cache: TileCache | None = None,
        retry: RetryPolicy | None = None,
    ) -> None:
        self.api = api
        self.extractor = extractor or DirtyTileExtractor()
        self.encoder = encoder or TileEncoder()
        self.cache = cache
        self.retry = retry or RetryPolicy()

    async def run(
        self,
        canvas_id: str,
        surface: Image.Image,
        origin: tuple[float, float],
        surface_zoom: int,
        target_zoom: int,
        viewport: TileBounds,
        layer_id: str | None = None,
    ) -> PipelineResult:
        started = time.perf_counter()
        extracted = await asyncio.to_thread(
            extract_stage,
            self.extractor,
            surface,
            origin,
            surface_zoom,
            target_zoom,
            viewport,
        )
        normalized = normalize_stage(extracted.tiles)
        encoded = await asyncio.to_thread(
            encode_stage, self.encoder, normalized.tiles, layer_id
        )
        uploaded = await upload_stage(self.api, canvas_id, encoded.uploads, self.retry)

        if uploaded.result is not None and self.cache is not None:
            for tile in normalized.tiles:
                self.cache.set(canvas_id, tile.z, tile.x, tile.y, tile.image)

        result = PipelineResult(
            extracted=len(extracted.tiles),
            encoded_bytes=encoded.total_bytes,
            oversized=encoded.oversized,
            saved=uploaded.result,
            attempts=uploaded.attempts,
            elapsed_s=time.perf_counter() - started,
        )
        logger.info(
            'Saved canvas %s: %d tiles, %d bytes, %d attempts in %.2fs',
            canvas_id,
            result.uploaded,
            result.encoded_bytes,
            result.attempts,
            result.elapsed_s,
        )
        return result


class SaveDebouncer:
    """
    Coalesces save requests fired in quick succession.

    schedule() (re)starts a delay timer and keeps only the latest save
    function. When the timer fires the pending save runs; saves never run
    concurrently. Errors of background saves are logged and kept in
    last_error; flush() runs the pending save now and propagates its error.
    """

    def __init__(self, delay_s: float = SAVE_DEBOUNCE_S) -> None:
        self.delay_s = delay_s
        self._pending: Callable[[], Awaitable[Any]] | None = None
        self._timer: asyncio.Task | None = None
        self._runs: set[asyncio.Task] = set()
        self._lock = asyncio.Lock()
        self.saves_run = 0
        self.last_error: BaseException | None = None

    @property
    def pending(self) -> bool:
        return self._pending is not None

    def schedule(self, save_fn: Callable[[], Awaitable[Any]]) -> None:
        self._pending = save_fn
        self._cancel_timer()
        self._timer = asyncio.create_task(self._wait_and_run())

    async def flush(self) -> None:
        self._cancel_timer()
        await self._run_pending()
        if self._runs:
            await asyncio.gather(*self._runs, return_exceptions=True)

    def cancel(self) -> None:
        self._cancel_timer()
        self._pending = None

    def _cancel_timer(self) -> None:
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
        self._timer = None

    async def _wait_and_run(self) -> None:
        await asyncio.sleep(self.delay_s)
        # Run in its own task so a later schedule() cannot cancel a save in flight
        task = asyncio.create_task(self._run_logged())
        self._runs.add(task)
        task.add_done_callback(self._runs.discard)

    async def _run_logged(self) -> None:
        try:
            await self._run_pending()
        except Exception as e:
            logger.exception('Debounced save failed')
            self.last_error = e

    async def _run_pending(self) -> None:
        async with self._lock:
            save_fn, self._pending = self._pending, None
            if save_fn is None:
                return
            await save_fn()
            self.saves_run += 1


def build_pipeline(
    api: DrawingApiClient, config: AppConfig, cache: TileCache | None = None
) -> tuple[TileSavePipeline, SaveDebouncer]:
    """Save pipeline and debouncer wired from the [encoder] and [client] sections."""
    enc = config.encoder
    encoder = TileEncoder(
        max_bytes=enc.max_bytes,
        initial_quality=enc.initial_quality,
        quality_step=enc.quality_step,
        quality_floor=enc.quality_floor,
        reject_oversized=enc.strict,
    )
    retry = RetryPolicy(
        max_attempts=config.client.retry_attempts,
        backoff_s=config.client.retry_backoff_s,
        factor=config.client.retry_factor,
    )
    pipeline = TileSavePipeline(api, encoder=encoder, cache=cache, retry=retry)
    return pipeline, SaveDebouncer(config.client.debounce_s)
