"""Tests for the HTTP API application."""

from __future__ import annotations

import aiohttp
import pytest
import pytest_asyncio
from aiohttp.test_utils import TestClient, TestServer

from server.app import create_app
from settings import AppConfig, ServiceEnv
from shared.constants import TILE_CACHE_CONTROL

WEBP = b'RIFF\x00\x00\x00\x00WEBPVP8 fake'


@pytest_asyncio.fixture
async def client(env):
    async with TestClient(TestServer(create_app(env))) as test_client:
        yield test_client


async def _create_canvas(client) -> dict:
    resp = await client.post(
        '/api/canvas', json={'centerLat': 35.6812, 'centerLng': 139.7671, 'zoom': 15}
    )
    assert resp.status == 201
    return (await resp.json())['canvas']


def _form(tiles) -> aiohttp.FormData:
    form = aiohttp.FormData()
    form.add_field('count', str(len(tiles)))
    for i, (z, x, y, data) in enumerate(tiles):
        form.add_field(f'tile_{i}_z', str(z))
        form.add_field(f'tile_{i}_x', str(x))
        form.add_field(f'tile_{i}_y', str(y))
        form.add_field(f'tile_{i}_image', data, filename='t.webp', content_type='image/webp')
    return form


class TestCanvasRoutes:
    """Canvas create, read and update."""

    @pytest.mark.asyncio
    async def test_health(self, client):
        """Health reports status and environment."""
        resp = await client.get('/api/health')
        body = await resp.json()
        assert resp.status == 200
        assert body['status'] == 'ok'
        assert body['environment'] == 'development'

    @pytest.mark.asyncio
    async def test_create_and_get(self, client):
        """A created canvas is returned in camelCase with an empty tile list."""
        canvas = await _create_canvas(client)
        assert canvas['tileCount'] == 0
        assert canvas['shareLat'] is None

        resp = await client.get(f'/api/canvas/{canvas["id"]}')
        body = await resp.json()
        assert resp.status == 200
        assert body['canvas']['id'] == canvas['id']
        assert body['tiles'] == []

    @pytest.mark.asyncio
    async def test_patch_share(self, client):
        """PATCH applies the share triple."""
        canvas = await _create_canvas(client)
        resp = await client.patch(
            f'/api/canvas/{canvas["id"]}',
            json={'shareLat': 35.0, 'shareLng': 139.0, 'shareZoom': 14},
        )
        body = await resp.json()
        assert resp.status == 200
        assert body['canvas']['shareZoom'] == 14

    @pytest.mark.asyncio
    async def test_invalid_create(self, client):
        """Out-of-range values give INVALID_DATA."""
        resp = await client.post('/api/canvas', json={'centerLat': 95, 'centerLng': 0, 'zoom': 3})
        body = await resp.json()
        assert resp.status == 400
        assert body['error'] == 'INVALID_DATA'

    @pytest.mark.asyncio
    async def test_invalid_json(self, client):
        """Malformed JSON bodies are rejected."""
        resp = await client.post(
            '/api/canvas', data='{not json', headers={'Content-Type': 'application/json'}
        )
        assert resp.status == 400
        assert (await resp.json())['error'] == 'INVALID_DATA'

    @pytest.mark.asyncio
    async def test_missing_canvas(self, client):
        """Unknown canvases give a NOT_FOUND JSON body."""
        resp = await client.get(f'/api/canvas/{"M" * 21}')
        body = await resp.json()
        assert resp.status == 404
        assert body['error'] == 'NOT_FOUND'
        assert body['message']


class TestTileRoutes:
    """Tile upload, query, download and delete."""

    @pytest.mark.asyncio
    async def test_upload_and_download(self, client):
        """Uploaded tiles are counted, listed and served with long caching."""
        canvas = await _create_canvas(client)
        cid = canvas['id']

        resp = await client.post(
            f'/api/canvas/{cid}/tiles', data=_form([(17, 1, 2, WEBP), (17, 2, 2, WEBP)])
        )
        body = await resp.json()
        assert resp.status == 200
        assert body['newCount'] == 2
        assert len(body['saved']) == 2
        assert body['canvas']['tileCount'] == 2

        resp = await client.get(
            f'/api/canvas/{cid}/tiles',
            params={'z': 17, 'minX': 0, 'maxX': 1, 'minY': 0, 'maxY': 5},
        )
        tiles = (await resp.json())['tiles']
        assert [(t['x'], t['y']) for t in tiles] == [(1, 2)]
        assert tiles[0]['updatedAt']

        resp = await client.get(f'/api/tiles/{cid}/17/1/2.webp')
        assert resp.status == 200
        assert resp.headers['Cache-Control'] == TILE_CACHE_CONTROL
        assert resp.content_type == 'image/webp'
        assert await resp.read() == WEBP

    @pytest.mark.asyncio
    async def test_missing_tile_image(self, client):
        """A tile that does not exist gives 404."""
        canvas = await _create_canvas(client)
        resp = await client.get(f'/api/tiles/{canvas["id"]}/17/9/9.webp')
        assert resp.status == 404

    @pytest.mark.asyncio
    async def test_delete_tile(self, client):
        """DELETE returns 204 once and 404 afterwards."""
        canvas = await _create_canvas(client)
        cid = canvas['id']
        await client.post(f'/api/canvas/{cid}/tiles', data=_form([(17, 1, 2, WEBP)]))

        resp = await client.delete(f'/api/tiles/{cid}/17/1/2.webp')
        assert resp.status == 204
        resp = await client.delete(f'/api/tiles/{cid}/17/1/2.webp')
        assert resp.status == 404

    @pytest.mark.asyncio
    async def test_bad_query_params(self, client):
        """Non-integer query parameters give INVALID_DATA."""
        canvas = await _create_canvas(client)
        resp = await client.get(
            f'/api/canvas/{canvas["id"]}/tiles',
            params={'z': 'x', 'minX': 0, 'maxX': 1, 'minY': 0, 'maxY': 1},
        )
        assert resp.status == 400

    @pytest.mark.asyncio
    async def test_zero_count_rejected(self, client):
        """A multipart upload with count=0 is invalid."""
        canvas = await _create_canvas(client)
        resp = await client.post(f'/api/canvas/{canvas["id"]}/tiles', data=_form([]))
        assert resp.status == 400
        assert (await resp.json())['error'] == 'INVALID_DATA'

    @pytest.mark.asyncio
    async def test_quota_error_body(self, client, db):
        """A full canvas answers LIMIT_EXCEEDED with its counts."""
        canvas = await _create_canvas(client)
        cid = canvas['id']
        db.execute('UPDATE canvas SET tile_count = 1000 WHERE id = ?', (cid,))

        resp = await client.post(f'/api/canvas/{cid}/tiles', data=_form([(17, 1, 2, WEBP)]))
        body = await resp.json()
        assert resp.status == 400
        assert body['error'] == 'LIMIT_EXCEEDED'
        assert (body['canvasId'], body['currentCount'], body['limit']) == (cid, 1000, 1000)


class TestLayerRoutes:
    """Layer CRUD over HTTP."""

    @pytest.mark.asyncio
    async def test_layer_lifecycle(self, client):
        """Create, rename, reorder and delete layers."""
        canvas = await _create_canvas(client)
        cid = canvas['id']

        resp = await client.get(f'/api/canvas/{cid}/layers')
        (base,) = (await resp.json())['layers']
        assert base['name'] == 'Layer 1'

        resp = await client.post(f'/api/canvas/{cid}/layers', json={'name': 'Roads'})
        assert resp.status == 201
        roads = (await resp.json())['layer']
        assert roads['order'] == 1

        resp = await client.post(f'/api/canvas/{cid}/layers')
        assert resp.status == 201
        assert (await resp.json())['layer']['name'] == 'Layer 3'

        resp = await client.patch(
            f'/api/canvas/{cid}/layers/{roads["id"]}', json={'order': 0, 'visible': False}
        )
        moved = (await resp.json())['layer']
        assert (moved['order'], moved['visible']) == (0, False)

        resp = await client.delete(f'/api/canvas/{cid}/layers/{roads["id"]}')
        assert await resp.json() == {'deleted': True, 'tilesDeleted': 0}

    @pytest.mark.asyncio
    async def test_last_layer_protected(self, client):
        """Deleting the only layer gives LAYER_LIMIT."""
        canvas = await _create_canvas(client)
        cid = canvas['id']
        resp = await client.get(f'/api/canvas/{cid}/layers')
        (base,) = (await resp.json())['layers']
        resp = await client.delete(f'/api/canvas/{cid}/layers/{base["id"]}')
        assert resp.status == 400
        assert (await resp.json())['error'] == 'LAYER_LIMIT'


class TestAdminRoutes:
    """Manual cleanup endpoints."""

    @pytest.mark.asyncio
    async def test_cleanup_in_development(self, client):
        """Cleanup runs and its record is listed."""
        resp = await client.post('/api/admin/cleanup')
        result = (await resp.json())['result']
        assert resp.status == 200
        assert result['success'] is True

        resp = await client.get('/api/admin/cleanup/records', params={'limit': 5})
        records = (await resp.json())['records']
        assert [r['id'] for r in records] == [result['deletion_record_id']]

    @pytest.mark.asyncio
    async def test_forbidden_in_production(self, db, blobs):
        """Production refuses the admin endpoints."""
        config = AppConfig.model_validate({'server': {'environment': 'production'}})
        app = create_app(ServiceEnv(db=db, blobs=blobs, config=config))
        async with TestClient(TestServer(app)) as client:
            resp = await client.post('/api/admin/cleanup')
            assert resp.status == 403
            assert (await resp.json())['error'] == 'FORBIDDEN'
            resp = await client.get('/api/admin/cleanup/records')
            assert resp.status == 403

    @pytest.mark.asyncio
    async def test_cleanup_locked(self, client, db):
        """A held lock answers 409 with the holder."""
        db.execute(
            "INSERT INTO cleanup_lock (id, locked_at, locked_by) VALUES (1, ?, 'other')",
            ('2999-01-01T00:00:00.000000+00:00',),
        )
        resp = await client.post('/api/admin/cleanup')
        body = await resp.json()
        assert resp.status == 409
        assert body['error'] == 'CLEANUP_LOCKED'
        assert body['lockedBy'] == 'other'
