"""Tests for the filesystem blob store."""

from __future__ import annotations

from pathlib import Path

import pytest

from domain.errors import StorageError, ValidationError
from storage.blobs import (
    BlobStore,
    FileSystemBlobStore,
    canvas_id_from_ogp_key,
    ogp_key,
    tile_key,
)

CANVAS_ID = 'x' * 21


class TestKeys:
    """Tests for blob key helpers."""

    def test_tile_key(self):
        """Tile blobs live under canvas/z/x/y.webp."""
        assert tile_key(CANVAS_ID, 17, 1, 2) == f'{CANVAS_ID}/17/1/2.webp'

    def test_ogp_key_round_trip(self):
        """OGP keys encode the canvas id."""
        key = ogp_key(CANVAS_ID)
        assert key == f'ogp/{CANVAS_ID}.png'
        assert canvas_id_from_ogp_key(key) == CANVAS_ID
        assert canvas_id_from_ogp_key(tile_key(CANVAS_ID, 1, 0, 0)) is None


class TestFileSystemBlobStore:
    """Tests for FileSystemBlobStore."""

    def test_satisfies_protocol(self, blobs):
        """The store is a BlobStore."""
        assert isinstance(blobs, BlobStore)

    def test_put_get_head(self, blobs):
        """Stored bytes are returned with their size."""
        blobs.put('a/b.webp', b'12345')
        assert blobs.get('a/b.webp') == b'12345'
        info = blobs.head('a/b.webp')
        assert info is not None
        assert info.size == 5

    def test_overwrite(self, blobs):
        """put() replaces existing content."""
        blobs.put('k.webp', b'old')
        blobs.put('k.webp', b'new')
        assert blobs.get('k.webp') == b'new'

    def test_missing(self, blobs):
        """Missing keys read as None; deleting them is a no-op."""
        assert blobs.get('nope.webp') is None
        assert blobs.head('nope.webp') is None
        blobs.delete('nope.webp')

    def test_delete(self, blobs):
        """delete() removes the blob."""
        blobs.put('k.webp', b'x')
        blobs.delete('k.webp')
        assert blobs.get('k.webp') is None

    def test_list_prefix_sorted(self, blobs):
        """list() yields matching keys in order and skips temp files."""
        blobs.put('ogp/b.png', b'1')
        blobs.put('ogp/a.png', b'1')
        blobs.put('other/c.webp', b'1')
        (blobs.root / 'ogp' / '.tmp-123').write_bytes(b'partial')
        assert list(blobs.list('ogp/')) == ['ogp/a.png', 'ogp/b.png']
        assert len(list(blobs.list())) == 3

    def test_list_walks_only_prefix_directory(self, blobs, monkeypatch):
        """Listing ogp/ never descends into the tile trees."""
        blobs.put('ogp/a.png', b'1')
        blobs.put('canvas1/17/1/2.webp', b'1')
        walked = []
        rglob = Path.rglob

        def recording_rglob(self, *args, **kwargs):
            walked.append(self)
            return rglob(self, *args, **kwargs)

        monkeypatch.setattr(Path, 'rglob', recording_rglob)

        assert list(blobs.list('ogp/')) == ['ogp/a.png']
        assert walked == [blobs.root / 'ogp']

    def test_list_partial_and_missing_prefixes(self, blobs):
        """Prefixes may end mid-name; an absent directory lists nothing."""
        blobs.put('ogp/a.png', b'1')
        blobs.put('canvas1/17/1/2.webp', b'1')
        blobs.put('canvas1/17/10/2.webp', b'1')
        assert list(blobs.list('og')) == ['ogp/a.png']
        assert list(blobs.list('canvas1/17/1')) == ['canvas1/17/1/2.webp', 'canvas1/17/10/2.webp']
        assert list(blobs.list('canvas1/17/1/')) == ['canvas1/17/1/2.webp']
        assert list(blobs.list('nothing/here/')) == []

    @pytest.mark.parametrize('key', ['', '/abs', '../escape', 'a//b', 'a/./b'])
    def test_invalid_keys(self, blobs, key):
        """Keys that could escape the root are refused."""
        with pytest.raises(ValidationError):
            blobs.put(key, b'x')

    def test_os_errors_become_storage_errors(self, blobs):
        """A directory where a file is expected raises StorageError."""
        blobs.put('dir/file.webp', b'x')
        with pytest.raises(StorageError):
            blobs.put('dir/file.webp/child', b'x')
