from __future__ import annotations

import contextlib
import logging
import ssl
from http import HTTPStatus
from typing import TYPE_CHECKING, Any

import aiohttp
import certifi

from domain.errors import (
    LayerLimitError,
    LockAcquisitionError,
    NotFoundError,
    QuotaExceededError,
    SketchmapError,
    StorageError,
    ValidationError,
)
from domain.models import Canvas, Layer, SaveTilesResult, TileInfo
from shared.constants import (
    HTTP_5XX_MAX,
    HTTP_5XX_MIN,
    HTTP_TIMEOUT_DEFAULT,
    MAX_TILES_PER_CANVAS,
    TILE_CONTENT_TYPE,
)

if TYPE_CHECKING:
    from collections.abc import Sequence
    from datetime import datetime

    from domain.models import TileUpload

logger = logging.getLogger(__name__)


def make_http_session(timeout_s: float = HTTP_TIMEOUT_DEFAULT) -> aiohttp.ClientSession:
    # SSL-контекст с сертификатами из certifi
    ssl_context = ssl.create_default_context(cafile=certifi.where())
    connector = aiohttp.TCPConnector(ssl=ssl_context)
    timeout = aiohttp.ClientTimeout(total=timeout_s)
    return aiohttp.ClientSession(connector=connector, timeout=timeout)


def error_from_response(status: int, body: dict[str, Any], canvas_id: str = '') -> SketchmapError:
    """Map an API error response to the matching domain error."""
    code = body.get('error', '')
    message = body.get('message') or f'HTTP {status}'
    if code == QuotaExceededError.code:
        return QuotaExceededError(
            body.get('canvasId', canvas_id),
            int(body.get('currentCount', MAX_TILES_PER_CANVAS)),
            int(body.get('limit', MAX_TILES_PER_CANVAS)),
        )
    if code == LayerLimitError.code:
        return LayerLimitError(message)
    if status == HTTPStatus.NOT_FOUND:
        return NotFoundError(message)
    if status == HTTPStatus.CONFLICT:
        return LockAcquisitionError(body.get('lockedBy', 'unknown'), body.get('lockedAt', ''))
    if status == HTTPStatus.BAD_REQUEST:
        return ValidationError(message)
    if status == HTTPStatus.TOO_MANY_REQUESTS or HTTP_5XX_MIN <= status < HTTP_5XX_MAX:
        return StorageError(f'Server error HTTP {status}: {message}')
    return SketchmapError(f'Unexpected HTTP {status}: {message}')


class DrawingApiClient:
    """
    Async client of the drawing tile API.

    Every call makes a single attempt; retries belong to the caller
    (see tiles.pipeline.RetryPolicy). Transport failures are raised as
    StorageError, HTTP errors as the matching domain error.

    Usage:
        async with DrawingApiClient('http://127.0.0.1:8787') as api:
            canvas = await api.create_canvas(35.68, 139.76, 15)
    """

    def __init__(
        self,
        base_url: str,
        session: aiohttp.ClientSession | None = None,
        timeout_s: float = HTTP_TIMEOUT_DEFAULT,
    ) -> None:
        self.base_url = base_url.rstrip('/')
        self._session = session
        self._owns_session = session is None
        self._timeout_s = timeout_s

    @property
    def session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = make_http_session(self._timeout_s)
        return self._session

    async def close(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
        self._session = None

    async def __aenter__(self) -> DrawingApiClient:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    def _url(self, path: str) -> str:
        return f'{self.base_url}/api{path}'

    async def _request(
        self,
        method: str,
        path: str,
        *,
        canvas_id: str = '',
        raw: bool = False,
        allow_not_found: bool = False,
        **kwargs: Any,
    ) -> Any:
        url = self._url(path)
        try:
            async with self.session.request(method, url, **kwargs) as resp:
                if resp.status == HTTPStatus.NOT_FOUND and allow_not_found:
                    return None
                if resp.status >= HTTPStatus.BAD_REQUEST:
                    body: dict[str, Any] = {}
                    with contextlib.suppress(aiohttp.ContentTypeError, ValueError):
                        body = await resp.json()
                    raise error_from_response(resp.status, body, canvas_id)
                if resp.status == HTTPStatus.NO_CONTENT:
                    return None
                if raw:
                    return await resp.read()
                return await resp.json()
        except (aiohttp.ClientError, TimeoutError) as e:
            logger.debug('%s %s failed: %s', method, path, e)
            msg = f'{method} {path} failed: {e}'
            raise StorageError(msg) from e

    async def health(self) -> dict[str, Any]:
        return await self._request('GET', '/health')

    async def create_canvas(self, center_lat: float, center_lng: float, zoom: int) -> Canvas:
        data = await self._request(
            'POST',
            '/canvas',
            json={'centerLat': center_lat, 'centerLng': center_lng, 'zoom': zoom},
        )
        return Canvas.model_validate(data['canvas'])

    async def get_canvas(self, canvas_id: str) -> tuple[Canvas, list[TileInfo]]:
        """Canvas metadata plus every tile coordinate with its version."""
        data = await self._request('GET', f'/canvas/{canvas_id}', canvas_id=canvas_id)
        tiles = [TileInfo.model_validate(t) for t in data.get('tiles', [])]
        return Canvas.model_validate(data['canvas']), tiles

    async def update_canvas(self, canvas_id: str, **changes: Any) -> Canvas:
        """PATCH canvas fields given in camelCase (centerLat, shareZoom, ...)."""
        data = await self._request(
            'PATCH', f'/canvas/{canvas_id}', canvas_id=canvas_id, json=changes
        )
        return Canvas.model_validate(data['canvas'])

    async def save_tiles(self, canvas_id: str, tiles: Sequence[TileUpload]) -> SaveTilesResult:
        """Upload a batch as multipart: count, tile_{i}_z/x/y/image[/layerId]."""
        form = aiohttp.FormData()
        form.add_field('count', str(len(tiles)))
        for i, tile in enumerate(tiles):
            form.add_field(f'tile_{i}_z', str(tile.z))
            form.add_field(f'tile_{i}_x', str(tile.x))
            form.add_field(f'tile_{i}_y', str(tile.y))
            if tile.layer_id is not None:
                form.add_field(f'tile_{i}_layerId', tile.layer_id)
            form.add_field(
                f'tile_{i}_image',
                tile.data,
                filename=f'{tile.z}_{tile.x}_{tile.y}.webp',
                content_type=TILE_CONTENT_TYPE,
            )
        data = await self._request(
            'POST', f'/canvas/{canvas_id}/tiles', canvas_id=canvas_id, data=form
        )
        return SaveTilesResult.model_validate(data)

    async def get_tiles_in_area(
        self,
        canvas_id: str,
        z: int,
        min_x: int,
        max_x: int,
        min_y: int,
        max_y: int,
        layer_id: str | None = None,
    ) -> list[TileInfo]:
        params = {
            'z': z,
            'minX': min_x,
            'maxX': max_x,
            'minY': min_y,
            'maxY': max_y,
        }
        if layer_id is not None:
            params['layerId'] = layer_id
        data = await self._request(
            'GET', f'/canvas/{canvas_id}/tiles', canvas_id=canvas_id, params=params
        )
        return [TileInfo.model_validate(t) for t in data.get('tiles', [])]

    async def get_tile_image(
        self,
        canvas_id: str,
        z: int,
        x: int,
        y: int,
        version: datetime | None = None,
    ) -> bytes | None:
        """Tile bytes, or None if the tile does not exist."""
        params = {'v': version.isoformat()} if version is not None else None
        return await self._request(
            'GET',
            f'/tiles/{canvas_id}/{z}/{x}/{y}.webp',
            canvas_id=canvas_id,
            raw=True,
            allow_not_found=True,
            params=params,
        )

    async def list_layers(self, canvas_id: str) -> list[Layer]:
        data = await self._request('GET', f'/canvas/{canvas_id}/layers', canvas_id=canvas_id)
        return [Layer.model_validate(item) for item in data.get('layers', [])]

    async def create_layer(self, canvas_id: str, name: str | None = None) -> Layer:
        body = {'name': name} if name is not None else {}
        data = await self._request(
            'POST', f'/canvas/{canvas_id}/layers', canvas_id=canvas_id, json=body
        )
        return Layer.model_validate(data['layer'])

    async def update_layer(self, canvas_id: str, layer_id: str, **changes: Any) -> Layer:
        """PATCH name, order and/or visible of one layer."""
        data = await self._request(
            'PATCH', f'/canvas/{canvas_id}/layers/{layer_id}', canvas_id=canvas_id, json=changes
        )
        return Layer.model_validate(data['layer'])

    async def delete_layer(self, canvas_id: str, layer_id: str) -> int:
        """Delete a layer; returns the number of its tiles removed."""
        data = await self._request(
            'DELETE', f'/canvas/{canvas_id}/layers/{layer_id}', canvas_id=canvas_id
        )
        return int(data.get('tilesDeleted', 0))

    async def delete_tile(self, canvas_id: str, z: int, x: int, y: int) -> bool:
        """False if the tile did not exist."""
        try:
            await self._request(
                'DELETE', f'/tiles/{canvas_id}/{z}/{x}/{y}.webp', canvas_id=canvas_id
            )
        except NotFoundError:
            return False
        return True
