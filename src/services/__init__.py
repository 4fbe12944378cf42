"""Server-side services over the metadata database and blob store."""

from services.canvas_service import CanvasService, LayerService
from services.cleanup import CleanupScheduler, CleanupService, list_deletion_records
from services.tile_store import TileStore

__all__ = [
    'CanvasService',
    'CleanupScheduler',
    'CleanupService',
    'LayerService',
    'TileStore',
    'list_deletion_records',
]
