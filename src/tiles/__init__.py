"""Client-side tile caching, loading and saving.

This module provides:
- TileCache: in-memory LRU cache of decoded tiles
- TileLoader: read-through viewport loader with concurrent downloads
- TileSavePipeline: extract -> normalize -> encode -> upload
- SaveDebouncer: coalesces rapid save requests
- RetryPolicy: exponential backoff for transient failures
"""

from tiles.cache import CachedTile, CacheStats, TileCache
from tiles.loader import TileLoader
from tiles.pipeline import (
    PipelineResult,
    RetryPolicy,
    SaveDebouncer,
    TileSavePipeline,
    build_pipeline,
)

__all__ = [
    'CacheStats',
    'CachedTile',
    'PipelineResult',
    'RetryPolicy',
    'SaveDebouncer',
    'TileCache',
    'TileLoader',
    'TileSavePipeline',
    'build_pipeline',
]
