"""HTTP API over the tile store, canvas/layer services and cleanup job.

Handlers are thin: they parse the request, call a blocking service in a
worker thread and serialize the result. Domain errors are mapped to JSON
`{error, message}` responses by error_middleware.
"""

from __future__ import annotations

import asyncio
import logging
from http import HTTPStatus
from typing import TYPE_CHECKING, Any

import pydantic
from aiohttp import web

from domain.errors import (
    LayerLimitError,
    LockAcquisitionError,
    NotFoundError,
    QuotaExceededError,
    SketchmapError,
    StorageError,
    ValidationError,
)
from domain.models import CanvasCreate, CanvasUpdate, LayerCreate, LayerUpdate, TileUpload
from services.canvas_service import CanvasService, LayerService
from services.cleanup import CleanupScheduler, CleanupService, list_deletion_records
from services.tile_store import TileStore
from shared.constants import (
    SERVER_MAX_REQUEST_BYTES,
    TILE_CACHE_CONTROL,
    TILE_CONTENT_TYPE,
)
from storage.database import to_db_time, utc_now

from settings import ServiceEnv

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)

ENV_KEY = web.AppKey('env', ServiceEnv)
TILES_KEY = web.AppKey('tiles', TileStore)
CANVASES_KEY = web.AppKey('canvases', CanvasService)
LAYERS_KEY = web.AppKey('layers', LayerService)
SCHEDULER_KEY = web.AppKey('scheduler', CleanupScheduler)

routes = web.RouteTableDef()


def _dump(model: pydantic.BaseModel) -> dict[str, Any]:
    return model.model_dump(mode='json', by_alias=True)


def _error(status: int, code: str, message: str, **extra: Any) -> web.Response:
    return web.json_response({'error': code, 'message': message, **extra}, status=status)


@web.middleware
async def error_middleware(
    request: web.Request, handler: Callable[[web.Request], Awaitable[web.StreamResponse]]
) -> web.StreamResponse:
    try:
        return await handler(request)
    except QuotaExceededError as e:
        return _error(
            HTTPStatus.BAD_REQUEST,
            e.code,
            'Maximum tile limit reached',
            canvasId=e.canvas_id,
            currentCount=e.current_count,
            limit=e.limit,
        )
    except LockAcquisitionError as e:
        return _error(
            HTTPStatus.CONFLICT, e.code, str(e), lockedBy=e.locked_by, lockedAt=e.locked_at
        )
    except (ValidationError, LayerLimitError) as e:
        return _error(HTTPStatus.BAD_REQUEST, e.code, str(e))
    except pydantic.ValidationError as e:
        return _error(
            HTTPStatus.BAD_REQUEST,
            ValidationError.code,
            '; '.join(err['msg'] for err in e.errors()),
        )
    except NotFoundError as e:
        return _error(HTTPStatus.NOT_FOUND, e.code, str(e))
    except StorageError as e:
        logger.error('Storage failure on %s %s: %s', request.method, request.path, e)
        return _error(HTTPStatus.INTERNAL_SERVER_ERROR, e.code, 'Storage operation failed')
    except SketchmapError as e:
        logger.exception('Unhandled domain error on %s %s', request.method, request.path)
        return _error(HTTPStatus.INTERNAL_SERVER_ERROR, e.code, str(e))


async def _json_body(request: web.Request) -> dict[str, Any]:
    try:
        body = await request.json()
    except ValueError:
        raise ValidationError('Request body must be valid JSON') from None
    if not isinstance(body, dict):
        raise ValidationError('Request body must be a JSON object')
    return body


def _int_param(source: Any, name: str) -> int:
    raw = source.get(name)
    try:
        return int(raw)
    except (TypeError, ValueError):
        msg = f'Parameter {name} must be an integer, got {raw!r}'
        raise ValidationError(msg) from None


def _env(request: web.Request) -> ServiceEnv:
    return request.app[ENV_KEY]


@routes.get('/api/health')
async def health(request: web.Request) -> web.Response:
    config = _env(request).config
    return web.json_response(
        {
            'status': 'ok',
            'environment': config.server.environment.value,
            'time': to_db_time(utc_now()),
        }
    )


# Canvas


@routes.post('/api/canvas')
async def create_canvas(request: web.Request) -> web.Response:
    data = CanvasCreate.model_validate(await _json_body(request))
    canvas = await asyncio.to_thread(request.app[CANVASES_KEY].create, data)
    return web.json_response({'canvas': _dump(canvas)}, status=HTTPStatus.CREATED)


@routes.get('/api/canvas/{canvas_id}')
async def get_canvas(request: web.Request) -> web.Response:
    canvas_id = request.match_info['canvas_id']
    canvas = await asyncio.to_thread(request.app[CANVASES_KEY].get, canvas_id)
    tiles = await asyncio.to_thread(request.app[TILES_KEY].get_tile_coordinates, canvas_id)
    return web.json_response({'canvas': _dump(canvas), 'tiles': [_dump(t) for t in tiles]})


@routes.patch('/api/canvas/{canvas_id}')
async def update_canvas(request: web.Request) -> web.Response:
    canvas_id = request.match_info['canvas_id']
    data = CanvasUpdate.model_validate(await _json_body(request))
    canvas = await asyncio.to_thread(request.app[CANVASES_KEY].update, canvas_id, data)
    return web.json_response({'canvas': _dump(canvas)})


# Tiles


@routes.get('/api/canvas/{canvas_id}/tiles')
async def get_tiles(request: web.Request) -> web.Response:
    canvas_id = request.match_info['canvas_id']
    q = request.query
    tiles = await asyncio.to_thread(
        request.app[TILES_KEY].get_tiles_in_area,
        canvas_id,
        _int_param(q, 'z'),
        _int_param(q, 'minX'),
        _int_param(q, 'maxX'),
        _int_param(q, 'minY'),
        _int_param(q, 'maxY'),
        q.get('layerId'),
    )
    return web.json_response({'tiles': [_dump(t) for t in tiles]})


async def _read_uploads(request: web.Request) -> list[TileUpload]:
    form = await request.post()
    count = _int_param(form, 'count')
    if count <= 0:
        raise ValidationError('Invalid tile count')
    uploads = []
    for i in range(count):
        image = form.get(f'tile_{i}_image')
        if not isinstance(image, web.FileField):
            msg = f'Invalid tile data at index {i}'
            raise ValidationError(msg)
        layer_id = form.get(f'tile_{i}_layerId')
        uploads.append(
            TileUpload(
                z=_int_param(form, f'tile_{i}_z'),
                x=_int_param(form, f'tile_{i}_x'),
                y=_int_param(form, f'tile_{i}_y'),
                data=image.file.read(),
                layer_id=str(layer_id) if layer_id else None,
            )
        )
    return uploads


@routes.post('/api/canvas/{canvas_id}/tiles')
async def save_tiles(request: web.Request) -> web.Response:
    canvas_id = request.match_info['canvas_id']
    uploads = await _read_uploads(request)
    result = await asyncio.to_thread(request.app[TILES_KEY].save_tiles, canvas_id, uploads)
    canvas = await asyncio.to_thread(request.app[CANVASES_KEY].get, canvas_id)
    return web.json_response({**_dump(result), 'canvas': _dump(canvas)})


def _tile_path(request: web.Request) -> tuple[str, int, int, int]:
    info = request.match_info
    return info['canvas_id'], int(info['z']), int(info['x']), int(info['y'])


@routes.get(r'/api/tiles/{canvas_id}/{z:\d+}/{x:\d+}/{y:\d+}.webp')
async def get_tile_image(request: web.Request) -> web.Response:
    data = await asyncio.to_thread(request.app[TILES_KEY].get_tile_image, *_tile_path(request))
    if data is None:
        raise NotFoundError('Tile not found')
    return web.Response(
        body=data,
        content_type=TILE_CONTENT_TYPE,
        headers={'Cache-Control': TILE_CACHE_CONTROL},
    )


@routes.delete(r'/api/tiles/{canvas_id}/{z:\d+}/{x:\d+}/{y:\d+}.webp')
async def delete_tile(request: web.Request) -> web.Response:
    deleted = await asyncio.to_thread(request.app[TILES_KEY].delete_tile, *_tile_path(request))
    if not deleted:
        raise NotFoundError('Tile not found')
    return web.Response(status=HTTPStatus.NO_CONTENT)


# Layers


@routes.get('/api/canvas/{canvas_id}/layers')
async def list_layers(request: web.Request) -> web.Response:
    canvas_id = request.match_info['canvas_id']
    layers = await asyncio.to_thread(request.app[LAYERS_KEY].list, canvas_id)
    return web.json_response({'layers': [_dump(layer) for layer in layers]})


@routes.post('/api/canvas/{canvas_id}/layers')
async def create_layer(request: web.Request) -> web.Response:
    canvas_id = request.match_info['canvas_id']
    body = await _json_body(request) if request.can_read_body else {}
    data = LayerCreate.model_validate(body)
    layer = await asyncio.to_thread(request.app[LAYERS_KEY].create, canvas_id, data.name)
    return web.json_response({'layer': _dump(layer)}, status=HTTPStatus.CREATED)


@routes.patch('/api/canvas/{canvas_id}/layers/{layer_id}')
async def update_layer(request: web.Request) -> web.Response:
    info = request.match_info
    data = LayerUpdate.model_validate(await _json_body(request))
    layer = await asyncio.to_thread(
        request.app[LAYERS_KEY].update, info['canvas_id'], info['layer_id'], data
    )
    return web.json_response({'layer': _dump(layer)})


@routes.delete('/api/canvas/{canvas_id}/layers/{layer_id}')
async def delete_layer(request: web.Request) -> web.Response:
    info = request.match_info
    removed = await asyncio.to_thread(
        request.app[LAYERS_KEY].delete, info['canvas_id'], info['layer_id']
    )
    return web.json_response({'deleted': True, 'tilesDeleted': removed})


# Admin


def _forbid_in_production(request: web.Request) -> web.Response | None:
    if _env(request).config.is_production:
        return _error(HTTPStatus.FORBIDDEN, 'FORBIDDEN', 'Not available in production')
    return None


@routes.post('/api/admin/cleanup')
async def run_cleanup(request: web.Request) -> web.Response:
    forbidden = _forbid_in_production(request)
    if forbidden is not None:
        return forbidden
    service = CleanupService(_env(request))
    result = await asyncio.to_thread(service.execute_cleanup)
    return web.json_response({'result': result.model_dump(mode='json')})


@routes.get('/api/admin/cleanup/records')
async def get_deletion_records(request: web.Request) -> web.Response:
    forbidden = _forbid_in_production(request)
    if forbidden is not None:
        return forbidden
    limit = _int_param(request.query, 'limit') if 'limit' in request.query else 20
    records = await asyncio.to_thread(list_deletion_records, _env(request).db, limit)
    return web.json_response({'records': [r.model_dump(mode='json') for r in records]})


async def _start_scheduler(app: web.Application) -> None:
    app[SCHEDULER_KEY].start()


async def _stop_scheduler(app: web.Application) -> None:
    await app[SCHEDULER_KEY].stop()


def create_app(env: ServiceEnv, *, with_scheduler: bool = False) -> web.Application:
    """
    Build the aiohttp application.

    Args:
        env: Database, blob store and config shared by all handlers.
        with_scheduler: Run the periodic cleanup job for the app's lifetime.
    """
    app = web.Application(
        client_max_size=SERVER_MAX_REQUEST_BYTES,
        middlewares=[error_middleware],
    )
    tiles = TileStore(env.db, env.blobs)
    app[ENV_KEY] = env
    app[TILES_KEY] = tiles
    app[CANVASES_KEY] = CanvasService(env.db, env.blobs)
    app[LAYERS_KEY] = LayerService(env.db, tiles)
    app.add_routes(routes)

    if with_scheduler and env.config.cleanup.enabled:
        app[SCHEDULER_KEY] = CleanupScheduler(
            lambda: CleanupService(env),
            interval_s=env.config.cleanup.interval_s,
            run_on_start=env.config.cleanup.run_on_start,
        )
        app.on_startup.append(_start_scheduler)
        app.on_cleanup.append(_stop_scheduler)
    return app
