"""Persistence: SQLite metadata and blob storage."""

from storage.blobs import (
    BlobInfo,
    BlobStore,
    FileSystemBlobStore,
    canvas_id_from_ogp_key,
    ogp_key,
    tile_key,
)
from storage.database import Database, from_db_time, to_db_time, utc_now

__all__ = [
    'BlobInfo',
    'BlobStore',
    'Database',
    'FileSystemBlobStore',
    'canvas_id_from_ogp_key',
    'from_db_time',
    'ogp_key',
    'tile_key',
    'to_db_time',
    'utc_now',
]
