"""Blob storage for tile and OGP image bytes.

Keys are slash-separated relative paths:
- tiles: {canvas_id}/{z}/{x}/{y}.webp
- OGP images: ogp/{canvas_id}.png
"""

from __future__ import annotations

import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from domain.errors import StorageError, ValidationError
from shared.constants import OGP_EXTENSION, OGP_KEY_PREFIX, TILE_EXTENSION

if TYPE_CHECKING:
    from collections.abc import Iterator

logger = logging.getLogger(__name__)


def tile_key(canvas_id: str, z: int, x: int, y: int) -> str:
    return f'{canvas_id}/{z}/{x}/{y}.{TILE_EXTENSION}'


def ogp_key(canvas_id: str) -> str:
    return f'{OGP_KEY_PREFIX}{canvas_id}.{OGP_EXTENSION}'


def canvas_id_from_ogp_key(key: str) -> str | None:
    """Inverse of ogp_key; None for keys outside the OGP prefix."""
    suffix = f'.{OGP_EXTENSION}'
    if not key.startswith(OGP_KEY_PREFIX) or not key.endswith(suffix):
        return None
    return key[len(OGP_KEY_PREFIX) : -len(suffix)] or None


@dataclass(frozen=True)
class BlobInfo:
    key: str
    size: int


@runtime_checkable
class BlobStore(Protocol):
    """Minimal object-store interface used by the services."""

    def put(self, key: str, data: bytes) -> None: ...

    def get(self, key: str) -> bytes | None: ...

    def delete(self, key: str) -> None: ...

    def head(self, key: str) -> BlobInfo | None: ...

    def list(self, prefix: str = '') -> Iterator[str]: ...


class FileSystemBlobStore:
    """BlobStore backed by a directory tree.

    Writes go through a temporary file and os.replace, so readers never see
    a partially written blob. Deleting a missing key is a no-op. Any OSError
    is raised as StorageError.
    """

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        logger.info('Blob store at %s', self.root)

    def _path(self, key: str) -> Path:
        parts = key.split('/')
        if not key or key.startswith('/') or any(p in ('', '.', '..') for p in parts):
            msg = f'Invalid blob key: {key!r}'
            raise ValidationError(msg)
        return self.root.joinpath(*parts)

    def put(self, key: str, data: bytes) -> None:
        path = self._path(key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=path.parent, prefix='.tmp-')
            try:
                with os.fdopen(fd, 'wb') as f:
                    f.write(data)
                os.replace(tmp, path)
            except BaseException:
                Path(tmp).unlink(missing_ok=True)
                raise
        except OSError as e:
            msg = f'Failed to write blob {key}: {e}'
            raise StorageError(msg) from e

    def get(self, key: str) -> bytes | None:
        path = self._path(key)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as e:
            msg = f'Failed to read blob {key}: {e}'
            raise StorageError(msg) from e

    def delete(self, key: str) -> None:
        path = self._path(key)
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            msg = f'Failed to delete blob {key}: {e}'
            raise StorageError(msg) from e

    def head(self, key: str) -> BlobInfo | None:
        path = self._path(key)
        try:
            return BlobInfo(key=key, size=path.stat().st_size)
        except FileNotFoundError:
            return None
        except OSError as e:
            msg = f'Failed to stat blob {key}: {e}'
            raise StorageError(msg) from e

    def list(self, prefix: str = '') -> Iterator[str]:
        """Yield keys starting with prefix, sorted.

        Only the directory named by the prefix is walked, so listing
        ogp/ does not touch the tile trees.
        """
        directory = prefix.rpartition('/')[0]
        start = self._path(directory) if directory else self.root
        if not start.is_dir():
            return
        keys = []
        for path in start.rglob('*'):
            if not path.is_file() or path.name.startswith('.tmp-'):
                continue
            key = path.relative_to(self.root).as_posix()
            if key.startswith(prefix):
                keys.append(key)
        yield from sorted(keys)
